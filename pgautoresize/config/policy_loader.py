"""Load cluster storage layouts and resize policies from YAML."""

import logging
from typing import List, Union

import yaml

from pgautoresize.models.models import ClusterSpec

logger = logging.getLogger(__name__)


class PolicyLoadError(ValueError):
    """Raised when a policy document is not a valid cluster definition."""
    pass


def _cluster_from_document(doc: dict) -> ClusterSpec:
    if not isinstance(doc, dict):
        raise PolicyLoadError(f"Expected a mapping, got {type(doc).__name__}")

    # Either a full Cluster manifest or a bare {name, namespace, spec} entry
    metadata = doc.get("metadata") or {}
    name = metadata.get("name") or doc.get("name")
    if not name:
        raise PolicyLoadError("Cluster definition has no name")
    namespace = metadata.get("namespace") or doc.get("namespace") or "default"
    spec = doc.get("spec")
    if spec is None:
        spec = {k: v for k, v in doc.items() if k not in ("name", "namespace", "metadata")}
    try:
        return ClusterSpec.from_dict(name, namespace, spec)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise PolicyLoadError(f"Invalid definition for cluster {name}: {e!r}")


def load_clusters(source: Union[str, bytes]) -> List[ClusterSpec]:
    """Parse one or more cluster definitions from a YAML string."""
    try:
        docs = [doc for doc in yaml.safe_load_all(source) if doc is not None]
    except yaml.YAMLError as e:
        raise PolicyLoadError(f"Invalid YAML: {e}")

    clusters = []
    for doc in docs:
        if isinstance(doc, dict) and "clusters" in doc:
            clusters.extend(_cluster_from_document(c) for c in doc["clusters"] or [])
        else:
            clusters.append(_cluster_from_document(doc))
    return clusters


def load_clusters_file(path: str) -> List[ClusterSpec]:
    with open(path) as f:
        clusters = load_clusters(f.read())
    logger.info(f"Loaded {len(clusters)} cluster definition(s) from {path}")
    return clusters
