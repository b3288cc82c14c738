"""fleetlink: remote command and monitoring of field devices over a LAN.

  - protocol: envelope codec, signatures, freshness filter, inbound gate
  - endpoint: listening UDP socket with a background receive thread
  - dispatcher: routes admitted commands to handlers, batch sends
  - device: command listener, host discovery, registration + heartbeats
  - host: dashboard service, device roster, HTTP API
"""

__version__ = "0.1.0"
