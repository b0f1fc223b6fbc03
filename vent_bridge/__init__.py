"""MQTT-to-HTTP bridge for a smoke sensor and vent actuator."""

__version__ = "0.1.0"
