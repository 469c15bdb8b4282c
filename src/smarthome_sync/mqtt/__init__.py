"""Topic scheme, capability codecs and topic routing."""

from smarthome_sync.mqtt.router import TopicRouter

__all__ = ["TopicRouter"]
