class NotFoundError(Exception):
    """Resource not found"""
    pass


class AuthenticationError(Exception):
    """The management credentials were rejected."""
    pass


class QueryError(Exception):
    """The server rejected or failed to run a statement."""

    def __init__(self, status: int, message: str):
        self.status = status
        super().__init__(f"HTTP {status}: {message.strip()}")


class CommandError(Exception):
    """A management command against one replica failed."""

    def __init__(self, replica_id, message: str, cause: BaseException = None):
        self.replica_id = replica_id
        self.cause = cause
        super().__init__(f"replica {replica_id}: {message}" + (f": {cause}" if cause else ""))
