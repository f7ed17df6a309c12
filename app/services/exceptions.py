"""
Service-level errors

Routers map these to HTTP status codes; the scheduler logs and skips
SyncInProgressError.
"""


class ServiceError(Exception):
    """Base error for the sync services"""


class NotFoundError(ServiceError):
    """A referenced record does not exist"""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransitionError(ServiceError):
    """A state machine was asked to make a move it does not allow"""

    def __init__(self, entity: str, entity_id: str, current: str, target: str):
        super().__init__(f"{entity} {entity_id} cannot move from {current} to {target}")
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target


class SyncInProgressError(ServiceError):
    """Another run of the same sync type holds the lock"""

    def __init__(self, sync_type: str):
        super().__init__(f"{sync_type} is already running")
        self.sync_type = sync_type
