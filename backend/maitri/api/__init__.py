"""
Maitri - HTTP Surface

- routes: dashboard REST API (/api/...)
- websocket: dashboard alert stream (/ws/alerts)
- health: system probes (/api/system/...)
"""
