"""
Error taxonomy shared by the toolkit.

Three families are raised as exceptions:

    'DataIntegrityError'  - the stored tree contradicts its own invariants
                            (fork node missing from the parent path, branch
                            cycle). Raised synchronously by the resolver.
    'InvalidRequestError' - a caller asked for something that cannot be done
                            (unknown ids, no resolvable parent, deleting a
                            non-leaf). Raised before any write is attempted.
    'TransportError'      - a repository or LLM call failed. The controller
                            catches it and reports it inside an
                            'OperationResult' instead of letting it escape an
                            awaited boundary.

Streaming faults never surface as exceptions; they are turned into assistant
text on the streaming update channel.
"""

from enum import StrEnum


class FaultKind(StrEnum):
    DATA_INTEGRITY = "data_integrity"
    VALIDATION = "validation"
    TRANSPORT = "transport"
    STREAMING = "streaming"


class SubwayError(Exception):
    kind: FaultKind


class DataIntegrityError(SubwayError):
    kind = FaultKind.DATA_INTEGRITY


class BranchPointNotFoundError(DataIntegrityError):
    def __init__(self, branch_id: str, branch_point_node_id: str | None, parent_branch_id: str):
        self.branch_id = branch_id
        self.branch_point_node_id = branch_point_node_id
        self.parent_branch_id = parent_branch_id
        super().__init__(
            f"Branch point {branch_point_node_id!r} of branch {branch_id!r} "
            f"is not part of the resolved path of parent branch {parent_branch_id!r}"
        )


class OrphanBranchError(DataIntegrityError):
    def __init__(self, branch_id: str, parent_branch_id: str):
        self.branch_id = branch_id
        self.parent_branch_id = parent_branch_id
        super().__init__(f"Branch {branch_id!r} references missing parent branch {parent_branch_id!r}")


class BranchCycleError(DataIntegrityError):
    def __init__(self, chain: list[str]):
        self.chain = chain
        super().__init__(f"Branch ancestry forms a cycle: {' -> '.join(chain)}")


class InvalidRequestError(SubwayError, ValueError):
    kind = FaultKind.VALIDATION


class BranchNotFoundError(InvalidRequestError):
    def __init__(self, branch_id: str | None):
        self.branch_id = branch_id
        super().__init__(f"Branch {branch_id!r} not found")


class NodeNotFoundError(InvalidRequestError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node {node_id!r} not found")


class MissingParentError(InvalidRequestError):
    pass


class NodeNotDeletableError(InvalidRequestError):
    pass


class BranchNotDeletableError(InvalidRequestError):
    pass


class StreamingInProgressError(InvalidRequestError):
    def __init__(self, branch_id: str):
        self.branch_id = branch_id
        super().__init__(f"A reply is already streaming on branch {branch_id!r}")


class TransportError(SubwayError):
    kind = FaultKind.TRANSPORT

    def __init__(self, operation: str, cause: BaseException | str | None = None):
        """'cause' is the underlying exception, or the message of a fault already reported."""
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{operation} failed{detail}")
