"""HTTP control surface (replaces the extension popup)."""
