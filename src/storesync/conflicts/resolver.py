"""Conflict resolution policies.

One strategy per ConflictWinner tag. A policy sees only the two versions
and the role of the node doing the resolving, so the same inputs always
give the same answer.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..db.schemas import ConflictWinner, NodeRole
from ..repository import VersionedValue


@dataclass(frozen=True)
class Resolution:
    """Outcome of a policy.

    winner is the side whose value survives (HQ or STORE), or MANUAL when
    an operator must decide. use_remote tells the caller whether to write
    the incoming value.
    """

    winner: ConflictWinner
    use_remote: bool
    value: Optional[VersionedValue]

    @property
    def requires_manual(self) -> bool:
        return self.winner == ConflictWinner.MANUAL


def _remote_role(node_role: NodeRole) -> NodeRole:
    return NodeRole.STORE if node_role == NodeRole.HQ else NodeRole.HQ


def _side(node_role: NodeRole, use_remote: bool) -> ConflictWinner:
    role = _remote_role(node_role) if use_remote else node_role
    return ConflictWinner.HQ if role == NodeRole.HQ else ConflictWinner.STORE


def _pick(local: VersionedValue, remote: VersionedValue, node_role: NodeRole, use_remote: bool) -> Resolution:
    return Resolution(
        winner=_side(node_role, use_remote),
        use_remote=use_remote,
        value=remote if use_remote else local,
    )


class ConflictPolicy(ABC):
    """Strategy interface for a conflict policy."""

    tag: ConflictWinner

    @abstractmethod
    def resolve(
        self, local: VersionedValue, remote: VersionedValue, node_role: NodeRole
    ) -> Resolution:
        """Pick a winner between the local and the remote version."""


class HqWinsPolicy(ConflictPolicy):
    tag = ConflictWinner.HQ

    def resolve(self, local, remote, node_role):
        # A store adopts the HQ value; HQ keeps its own.
        return _pick(local, remote, node_role, use_remote=node_role == NodeRole.STORE)


class StoreWinsPolicy(ConflictPolicy):
    tag = ConflictWinner.STORE

    def resolve(self, local, remote, node_role):
        return _pick(local, remote, node_role, use_remote=node_role == NodeRole.HQ)


class LatestTimestampPolicy(ConflictPolicy):
    """Later timestamp wins; an exact tie goes to HQ."""

    tag = ConflictWinner.LATEST_TIMESTAMP

    def resolve(self, local, remote, node_role):
        if local.timestamp != remote.timestamp:
            use_remote = remote.timestamp > local.timestamp
        else:
            use_remote = node_role == NodeRole.STORE
        return _pick(local, remote, node_role, use_remote)


class ManualPolicy(ConflictPolicy):
    tag = ConflictWinner.MANUAL

    def resolve(self, local, remote, node_role):
        return Resolution(winner=ConflictWinner.MANUAL, use_remote=False, value=None)


POLICIES: dict[ConflictWinner, ConflictPolicy] = {
    policy.tag: policy
    for policy in (HqWinsPolicy(), StoreWinsPolicy(), LatestTimestampPolicy(), ManualPolicy())
}


def policy_for(tag: ConflictWinner) -> ConflictPolicy:
    """Strategy for a rule's conflict_resolution tag."""
    return POLICIES[ConflictWinner(tag)]
