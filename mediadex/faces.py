"""
Face cluster registry.

Face detection reports opaque signatures; the registry maps each
signature to a FaceCluster id, creating a cluster the first time a
signature is seen. Merging two clusters (the heuristic for *when* lives
in the analyzer) redirects the absorbed cluster to the surviving one.
"""

import logging
import threading
from typing import Iterable, Optional

from .types import FaceCluster

logger = logging.getLogger(__name__)


class FaceRegistry:
    """Thread-safe signature -> cluster mapping with membership tracking."""

    def __init__(self):
        self._lock = threading.Lock()
        self._clusters: dict[str, FaceCluster] = {}
        self._by_signature: dict[str, str] = {}
        self._aliases: dict[str, str] = {}
        self._next_id = 1

    def _canonical(self, cluster_id: str) -> str:
        while cluster_id in self._aliases:
            cluster_id = self._aliases[cluster_id]
        return cluster_id

    def canonical(self, cluster_id: str) -> str:
        """Surviving cluster id after any merges."""
        with self._lock:
            return self._canonical(cluster_id)

    def resolve(self, signatures: Iterable[str]) -> frozenset[str]:
        """Map signatures to cluster ids, creating clusters for unseen ones."""
        ids = set()
        with self._lock:
            for sig in signatures:
                cluster_id = self._by_signature.get(sig)
                if cluster_id is None:
                    cluster_id = f"face-{self._next_id}"
                    self._next_id += 1
                    self._clusters[cluster_id] = FaceCluster(id=cluster_id)
                    self._by_signature[sig] = cluster_id
                    logger.debug("New face cluster %s", cluster_id)
                ids.add(self._canonical(cluster_id))
        return frozenset(ids)

    def update_members(self, item_id: str, old_ids: Iterable[str], new_ids: Iterable[str]) -> None:
        """Move an item's membership after its face set was committed."""
        with self._lock:
            for cluster_id in old_ids:
                cluster = self._clusters.get(self._canonical(cluster_id))
                if cluster is not None:
                    cluster.members.discard(item_id)
            for cluster_id in new_ids:
                cluster = self._clusters.get(self._canonical(cluster_id))
                if cluster is not None:
                    cluster.members.add(item_id)

    def forget_item(self, item_id: str) -> None:
        with self._lock:
            for cluster in self._clusters.values():
                cluster.members.discard(item_id)

    def label(self, cluster_id: str, name: Optional[str]) -> FaceCluster:
        with self._lock:
            cluster = self._clusters.get(self._canonical(cluster_id))
            if cluster is None:
                raise KeyError(cluster_id)
            cluster.label = name or None
            return cluster

    def merge(self, keep_id: str, absorb_id: str) -> FaceCluster:
        """Fold ``absorb_id`` into ``keep_id``. Returns the surviving cluster."""
        with self._lock:
            keep_id = self._canonical(keep_id)
            absorb_id = self._canonical(absorb_id)
            if keep_id not in self._clusters:
                raise KeyError(keep_id)
            if absorb_id not in self._clusters:
                raise KeyError(absorb_id)
            keep = self._clusters[keep_id]
            if keep_id == absorb_id:
                return keep
            absorbed = self._clusters.pop(absorb_id)
            keep.members |= absorbed.members
            if keep.label is None:
                keep.label = absorbed.label
            self._aliases[absorb_id] = keep_id
            logger.info("Merged face cluster %s into %s", absorb_id, keep_id)
            return keep

    def get(self, cluster_id: str) -> Optional[FaceCluster]:
        with self._lock:
            return self._clusters.get(self._canonical(cluster_id))

    def clusters(self) -> list[FaceCluster]:
        with self._lock:
            return sorted(self._clusters.values(), key=lambda c: c.id)

    # -- persistence --

    def to_records(self) -> dict:
        with self._lock:
            return {
                "next_id": self._next_id,
                "clusters": [
                    {"id": c.id, "label": c.label, "members": sorted(c.members)}
                    for c in self._clusters.values()
                ],
                "signatures": dict(self._by_signature),
                "aliases": dict(self._aliases),
            }

    @classmethod
    def from_records(cls, data: dict) -> "FaceRegistry":
        registry = cls()
        registry._next_id = int(data.get("next_id", 1))
        for c in data.get("clusters", []):
            registry._clusters[c["id"]] = FaceCluster(
                id=c["id"], label=c.get("label"), members=set(c.get("members", [])),
            )
        registry._by_signature = dict(data.get("signatures", {}))
        registry._aliases = dict(data.get("aliases", {}))
        return registry
