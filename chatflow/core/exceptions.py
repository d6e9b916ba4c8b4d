class FlowGraphError(Exception):
    """Base class for faults raised by flow graph operations."""


class NotFoundError(FlowGraphError):
    """A referenced node or edge id does not exist in the graph."""


class InvalidOperationError(FlowGraphError):
    """A structural mutation the graph does not allow, e.g. deleting the Start node."""


class InvalidConnectionError(FlowGraphError):
    """An edge that would break the port or fan-out rules."""


class CorruptGraphError(FlowGraphError):
    """A persisted document that fails the basic structural invariants."""
