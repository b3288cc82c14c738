"""fleetlink: device side.

  - listener: command port, acknowledgements, handler registration
  - discovery: broadcast request/timeout/retry handshake to find the host
  - reporter: registration and periodic heartbeats to the host
  - agent: owns one of each and runs them together
"""
