from __future__ import annotations


class StoreClosedError(Exception):
    """New orders are not being accepted right now."""

    def __init__(self, message: str, next_open_time: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.next_open_time = next_open_time


class ValidationError(ValueError):
    pass


class PersistenceError(Exception):
    pass


class InvalidTransitionError(ValueError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f'Cannot change order status from {current} to {requested}')
        self.current = current
        self.requested = requested


class NotificationDeliveryFailure(Exception):
    """Raised inside alert and push channels; always caught by the dispatcher."""
