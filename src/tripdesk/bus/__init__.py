from .factory import build_transport_bus_from_env
from .fanout import FanoutBus
from .in_memory import InMemoryBus
from .kafka import KafkaBus
from .routing import EVENT_TOPIC_MAP

__all__ = ["EVENT_TOPIC_MAP", "FanoutBus", "InMemoryBus", "KafkaBus", "build_transport_bus_from_env"]
