from .store import StateStore, KEY_CREDENTIALS, KEY_TARGETS, KEY_ACTION_TEMPLATE, KEY_RECORDING

__all__ = ["StateStore", "KEY_CREDENTIALS", "KEY_TARGETS", "KEY_ACTION_TEMPLATE", "KEY_RECORDING"]
