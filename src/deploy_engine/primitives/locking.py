"""Names of the shared external state that steps lease."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

IAC_STATE_RESOURCE = "iac-state"

LockMode = Literal["read", "write"]


@dataclass(frozen=True)
class ResourceIdentifier:
    """A leasable resource, e.g. ``ResourceIdentifier.iac_state("c-42")``.

    Equality and hashing cover the lock mode; ordering ignores it.
    """

    resource_type: str
    resource_id: str
    lock_mode: LockMode = "write"

    @classmethod
    def iac_state(cls, cluster_id: str) -> ResourceIdentifier:
        """Terraform state of one cluster; one writer at a time."""
        return cls(IAC_STATE_RESOURCE, cluster_id)

    @property
    def sort_key(self) -> tuple[str, str]:
        return self.resource_type, self.resource_id

    def __lt__(self, other: ResourceIdentifier) -> bool:
        # Multi-resource sections acquire in this order.
        return self.sort_key < other.sort_key

    def __str__(self) -> str:
        name = f"{self.resource_type}:{self.resource_id}"
        return name if self.lock_mode == "write" else f"{name}:{self.lock_mode}"
