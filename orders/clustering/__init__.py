"""
Clustering subpackage for the Orders domain.

Public API:
- build_clusters
- Cluster, ClusterResult
- ClusterPolicy
"""

from .engine import Cluster, ClusterResult, build_clusters
from .policy import ClusterPolicy, cluster_policy_from_env, default_cluster_policy

__all__ = [
    "build_clusters",
    "Cluster",
    "ClusterResult",
    "ClusterPolicy",
    "default_cluster_policy",
    "cluster_policy_from_env",
]
