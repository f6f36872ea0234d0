"""
core/models.py -- Result types shared by the reconciliation and revocation core.

Stored entities (Peer, Certificate, ...) live in credentials/models.py. The
types here describe what the daemons report and what a pass or revocation did.
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DaemonPeer:
    """A WireGuard peer as reported by a node's daemon."""

    public_key: str
    ip_four: str
    ip_six: str


@dataclass(frozen=True)
class DaemonConnection:
    """An OpenVPN client currently connected to a node."""

    common_name: str
    ip_four: str = ""
    ip_six: str = ""


@dataclass
class NodeReport:
    """Outcome of one reconciliation pass over a single node.

    failures holds one human-readable line per soft failure (unreachable
    daemon, failed call). A node whose observed state could not be listed
    has observed_ok=False and issues no calls for that path.
    """

    node_url: str
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    disconnected: list[str] = field(default_factory=list)
    already_satisfied: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    observed_ok: bool = True

    @property
    def call_count(self) -> int:
        return len(self.added) + len(self.removed) + len(self.disconnected) + len(self.already_satisfied)


@dataclass
class SyncReport:
    nodes: list[NodeReport] = field(default_factory=list)

    @property
    def call_count(self) -> int:
        return sum(n.call_count for n in self.nodes)

    @property
    def failure_count(self) -> int:
        return sum(len(n.failures) for n in self.nodes)


@dataclass
class RevocationResult:
    """What a cascading revocation found and did.

    A result with nothing found is a no-op, not an error. Daemon failures are
    listed in failures; the store-level deletion happens regardless and the
    next reconciliation pass removes anything left behind on the node.
    """

    peers_removed: list[str] = field(default_factory=list)
    certificates_disconnected: list[str] = field(default_factory=list)
    certificates_deleted: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not (self.peers_removed or self.certificates_disconnected or self.certificates_deleted)

    def merge(self, other: "RevocationResult") -> None:
        self.peers_removed.extend(other.peers_removed)
        self.certificates_disconnected.extend(other.certificates_disconnected)
        self.certificates_deleted.extend(other.certificates_deleted)
        self.failures.extend(other.failures)
