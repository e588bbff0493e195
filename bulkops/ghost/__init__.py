"""Module __init__: the traffic observer package."""
#
# PURPOSE:
# Sits between the browser and the web app and watches traffic:
# Browser <-> Capture Proxy <-> backend.leadconnectorhq.com
#
# KEY MODULES:
# - proxy.py: mitmproxy addon + proxy lifecycle, flow registry (body source)
#

from .proxy import CaptureProxy, FlowRegistry, TrafficAddon

__all__ = ["CaptureProxy", "FlowRegistry", "TrafficAddon"]
