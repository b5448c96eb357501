"""
presence — Location-bound rotating attendance credentials.

Sub-packages:
  credentials    — issuance, rotation, QR rendering
  scanning       — geofence-gated capture session
  redemption     — validation and submission to the attendance store
  realtime       — reconnecting push-event channel
  notifications  — classification and feed of inbound events
"""

__version__ = "1.0.0"
