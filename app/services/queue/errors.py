class QueueError(Exception):
    """Base exception for queue provider errors."""


class QueueConnectionError(QueueError):
    pass


class QueueOperationError(QueueError):
    pass


class QueueSerializationError(QueueError):
    pass


class QueueDeserializationError(QueueError):
    pass


class QueueTimeoutError(QueueError):
    """The backend did not answer in time.

    A ``pop`` that simply finds no message returns None instead.
    """


class QueueProviderError(QueueError):
    pass
