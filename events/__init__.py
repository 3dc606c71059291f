from events.hub import EventHub, EventStream

__all__ = ["EventHub", "EventStream"]
