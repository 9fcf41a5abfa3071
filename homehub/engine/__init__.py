"""Device messaging and automation engine.

Receives encrypted status/telemetry from devices over MQTT, reconciles it into
device state, evaluates automation rules and publishes encrypted commands
back to devices.
"""
