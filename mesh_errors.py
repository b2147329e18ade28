# mesh_errors.py
# --------------------------------------------------------------------
# Failure kinds shared by the relay, the coordinator and the connector
# --------------------------------------------------------------------


class MeshError(Exception):
    """Base class for everything raised by the mesh signaling code."""


class MediaUnavailable(MeshError):
    """A capture device was denied or is missing. Aborts a join."""

    def __init__(self, kind, reason):
        super().__init__(f"{kind} unavailable: {reason}")
        self.kind = kind
        self.reason = reason


class RelayUnreachable(MeshError):
    """The signaling websocket is down; recovered by reconnecting."""


class NegotiationTimeout(MeshError):
    """A peer link made no progress within the negotiation bound."""

    def __init__(self, remote_id, seconds):
        super().__init__(f"negotiation with {remote_id} timed out after {seconds}s")
        self.remote_id = remote_id
        self.seconds = seconds


class PeerUnreachable(MeshError):
    """Relay destination is not (or no longer) a member of the sender's room."""

    def __init__(self, remote_id):
        super().__init__(f"peer {remote_id} is not reachable")
        self.remote_id = remote_id


class ProtocolError(MeshError):
    """An envelope could not be decoded or has an unknown kind."""
