"""fleetlink: dashboard host side.

  - roster: liveness-annotated table of registered devices
  - service: dashboard UDP port (discovery replies, roster updates, sends)
  - api: FastAPI router the dashboard UI talks to
"""
