from typing import Any, Dict, Optional, Sequence


class ConflictException(Exception):
    """
    Exception raised when a write is rejected because the stored record no longer
    matches the version the caller read.

    Raised by ConcurrentDbService when the pre-read version differs from the expected
    version, or when the conditional write affects zero rows. Never retried.

    Attributes:
        message -- explanation of the error
        descriptor -- ConflictDescriptor holding both the local and the remote state
    """
    code = "CONFLICT"

    def __init__(self, message, descriptor=None):
        self.message = message
        self.descriptor = descriptor
        super().__init__(self.message)

    @property
    def local_data(self) -> Optional[Dict[str, Any]]:
        return self.descriptor.local_data if self.descriptor is not None else None

    @property
    def remote_data(self):
        return self.descriptor.remote_data if self.descriptor is not None else None

    def __str__(self):
        if self.descriptor is not None:
            return f"{self.message} (table={self.descriptor.table}, record_id={self.descriptor.record_id})"
        return self.message


class ManualResolutionRequired(ConflictException):
    """
    Exception raised by the manual resolution strategy: both versions must be shown to
    a human, who then picks another strategy.
    """
    code = "MANUAL_RESOLUTION_REQUIRED"


class DuplicateRecordError(Exception):
    """
    Exception raised when create_safely finds an existing record sharing one of the
    unique field values, or when the store reports a unique violation on insert.
    """
    code = "DUPLICATE"

    def __init__(self, message, table=None, fields: Optional[Sequence[str]] = None):
        self.table = table
        self.fields = list(fields) if fields else []
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        details = []
        if self.table is not None:
            details.append(f"table={self.table}")
        if self.fields:
            details.append(f"fields={', '.join(self.fields)}")

        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message


class RecordNotFoundError(Exception):
    """
    Exception raised when a requested record cannot be found in the store.

    Attributes:
        record_id -- ID of the record that was not found
        table -- name of the table that was searched
        message -- explanation of the error
    """
    code = "NOT_FOUND"

    def __init__(self, message, record_id=None, table=None):
        self.record_id = record_id
        self.table = table
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        if self.record_id is not None and self.table is not None:
            return f"{self.message} (record_id={self.record_id}, table={self.table})"
        return self.message


class TransientStoreError(Exception):
    """
    Exception raised for failures expected to go away on their own: network blips,
    timeouts, temporary unavailability of the backing store. Eligible for retry.
    """
    code = "TRANSIENT"

    def __init__(self, message, operation=None, cause: Exception = None):
        self.operation = operation
        self.cause = cause
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        details = []
        if self.operation is not None:
            details.append(f"operation={self.operation}")
        if self.cause is not None:
            details.append(f"cause={self.cause}")

        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message


class LockHeldError(Exception):
    """
    Exception raised immediately when an operation targets a (table, id) pair that
    another in-process operation is already working on. No queueing, no retry.
    """
    code = "LOCK_HELD"

    def __init__(self, message, key=None):
        self.key = key
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        if self.key is not None:
            return f"{self.message} (key={self.key})"
        return self.message


class InvalidDataException(Exception):
    """
    Exception raised when a record, update or request cannot be validated.
    """
    code = "INVALID_DATA"

    def __init__(self, message, table=None, record_id=None, cause: Exception = None):
        self.table = table
        self.record_id = record_id
        self.message = message
        self.cause = cause
        super().__init__(self.message)

    def __str__(self):
        details = []
        if self.table is not None:
            details.append(f"table={self.table}")
        if self.record_id is not None:
            details.append(f"record id={self.record_id}")
        if self.cause is not None:
            details.append(f"cause={self.cause}")

        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message


class ConflictNotFoundError(Exception):
    """
    Exception raised when resolving a pending conflict id that is unknown or was
    already resolved.
    """
    code = "CONFLICT_NOT_FOUND"

    def __init__(self, message, conflict_id=None):
        self.conflict_id = conflict_id
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        if self.conflict_id is not None:
            return f"{self.message} (conflict_id={self.conflict_id})"
        return self.message
