"""Message-bus infrastructure: the MQTT subscriber feeding the aggregator."""

from wsprmux_telemetry.mqtt_subscriber import MqttSubscriber

__all__ = [
    "MqttSubscriber",
]
