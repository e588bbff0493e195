# ============================================================================
# bulkops/__init__.py
# Package Marker for the Bulk Operations Helper
# ============================================================================
#
# PURPOSE:
# Captures session credentials and the list of location ids from live web
# app traffic, then applies one mutation to every captured location.
#
# LAYOUT:
# - base/: configuration and the session context that wires things together
# - ghost/: mitmproxy addon that turns flows into traffic events
# - capture/: correlator that pairs events and extracts credentials/targets
# - data/: persistent key-value store with change notifications
# - executor/: batched bulk runner, action specs, outcome classification
# - server/, cli/: control surfaces (HTTP API and command line)
#
# ============================================================================

__version__ = "0.3.0"
