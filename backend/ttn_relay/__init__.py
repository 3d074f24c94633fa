"""
TTN Sensor Relay Backend
========================

This is the Python package for the relay between The Things Network (TTN)
and the reef monitoring dashboard.

HOW IT'S ORGANIZED:
------------------
- models/    = Data structures (what does an uplink look like?)
- services/  = Workers (talk to the TTN broker and the TTN Storage API)
- routers/   = API endpoints (REST lookups and the live WebSocket)
- main.py    = Puts it all together and starts the server
- client.py  = Python version of the dashboard's data logic
- watch.py   = Command line viewer for the live stream
"""

__version__ = "1.0.0"
