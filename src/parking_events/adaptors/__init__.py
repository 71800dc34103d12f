from .memory import InMemoryBroker, InMemoryEventStore, InMemorySnapshotStore

__all__ = ["InMemoryBroker", "InMemoryEventStore", "InMemorySnapshotStore"]
