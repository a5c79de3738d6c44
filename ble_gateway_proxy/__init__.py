"""
BLE Gateway MQTT Proxy
Receives telemetry from an April Brother BLE Gateway V4 over HTTP and
republishes the decoded device sightings to any MQTT broker.
"""

__version__ = "1.4.0"
