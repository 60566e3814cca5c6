"""Manifest Set loading.

A manifest directory holds ``*.yaml``/``*.yml`` files, read in sorted file
order and document order. Each document is either a wrapper::

    kind: StatefulSet
    name: db
    dependsOn: [Secret/creds]
    timeoutSeconds: 180
    payload: {...plain Kubernetes object...}

or a plain Kubernetes object whose dependencies are listed in the
``kubeconverge.io/depends-on`` annotation.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from .config import settings
from .errors import ManifestError
from .schemas import CLUSTER_SCOPED_KINDS, ResourceIdentity, ResourceSpec

logger = logging.getLogger(__name__)

DEPENDS_ON_ANNOTATION = "kubeconverge.io/depends-on"
TIMEOUT_ANNOTATION = "kubeconverge.io/timeout-seconds"

_CREDENTIAL_URI = re.compile(r"[a-zA-Z][a-zA-Z0-9+.-]*://[^/\s:@]+:[^/\s@]+@")


def _namespace_for(kind: str, namespace: Optional[str], default_namespace: str) -> str:
    if kind in CLUSTER_SCOPED_KINDS:
        return ""
    return namespace or default_namespace


def _parse_ref(ref: Any, default_namespace: str, where: str) -> ResourceIdentity:
    try:
        if isinstance(ref, str):
            return ResourceIdentity.parse(ref, default_namespace)
        if isinstance(ref, dict) and ref.get("kind") and ref.get("name"):
            kind = str(ref["kind"])
            return ResourceIdentity(
                kind=kind,
                name=str(ref["name"]),
                namespace=_namespace_for(kind, ref.get("namespace"), default_namespace),
            )
    except ValueError as e:
        raise ManifestError(f"{where}: {e}") from e
    raise ManifestError(f"{where}: invalid dependsOn entry {ref!r}")


def _parse_timeout(value: Any, where: str) -> Optional[float]:
    if value is None:
        return None
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        raise ManifestError(f"{where}: timeoutSeconds must be a number, got {value!r}")
    if timeout <= 0:
        raise ManifestError(f"{where}: timeoutSeconds must be positive")
    return timeout


def _spec_from_wrapper(doc: Dict[str, Any], default_namespace: str, where: str) -> ResourceSpec:
    for field in ("kind", "name", "payload"):
        if not doc.get(field):
            raise ManifestError(f"{where}: missing required field '{field}'")
    payload = doc["payload"]
    if not isinstance(payload, dict):
        raise ManifestError(f"{where}: payload must be a mapping")

    kind = str(doc["kind"])
    name = str(doc["name"])

    # The payload is what gets submitted, so it has to agree with the wrapper.
    meta = payload.get("metadata") or {}
    if payload.get("kind") not in (None, kind) or meta.get("name") not in (None, name):
        raise ManifestError(f"{where}: payload kind/name do not match {kind}/{name}")
    if doc.get("namespace") and meta.get("namespace") and doc["namespace"] != meta["namespace"]:
        raise ManifestError(
            f"{where}: namespace '{doc['namespace']}' does not match payload namespace '{meta['namespace']}'"
        )
    namespace = _namespace_for(kind, doc.get("namespace") or meta.get("namespace"), default_namespace)

    depends_on = doc.get("dependsOn") or []
    if not isinstance(depends_on, list):
        raise ManifestError(f"{where}: dependsOn must be a list")

    return ResourceSpec(
        identity=ResourceIdentity(kind=kind, name=name, namespace=namespace),
        depends_on=tuple(_parse_ref(r, namespace or default_namespace, where) for r in depends_on),
        payload=payload,
        timeout_seconds=_parse_timeout(doc.get("timeoutSeconds"), where),
        source=where,
    )


def _spec_from_object(doc: Dict[str, Any], default_namespace: str, where: str) -> ResourceSpec:
    kind = doc.get("kind")
    meta = doc.get("metadata") or {}
    name = meta.get("name")
    if not kind or not name:
        raise ManifestError(f"{where}: object needs kind and metadata.name")

    annotations = meta.get("annotations") or {}
    raw_deps = annotations.get(DEPENDS_ON_ANNOTATION, "")
    refs = [r for r in str(raw_deps).split(",") if r.strip()]

    namespace = _namespace_for(str(kind), meta.get("namespace"), default_namespace)
    return ResourceSpec(
        identity=ResourceIdentity(kind=str(kind), name=str(name), namespace=namespace),
        depends_on=tuple(_parse_ref(r, namespace or default_namespace, where) for r in refs),
        payload=doc,
        timeout_seconds=_parse_timeout(annotations.get(TIMEOUT_ANNOTATION), where),
        source=where,
    )


def warn_inline_credentials(spec: ResourceSpec) -> List[str]:
    """Return (and log) ConfigMap keys whose value embeds user:password in a URI."""
    if spec.kind != "ConfigMap":
        return []
    flagged = []
    for key, value in (spec.payload.get("data") or {}).items():
        if isinstance(value, str) and _CREDENTIAL_URI.search(value):
            flagged.append(key)
            logger.warning(
                "%s: key '%s' embeds credentials in a connection URI; "
                "consider a Secret reference instead",
                spec.identity,
                key,
            )
    return flagged


def parse_documents(docs: Iterable[Any], default_namespace: str, source: str) -> List[ResourceSpec]:
    specs: List[ResourceSpec] = []
    for index, doc in enumerate(docs):
        if doc is None:
            continue
        where = f"{source}#{index}"
        if not isinstance(doc, dict):
            raise ManifestError(f"{where}: document must be a mapping")
        if "apiVersion" in doc:
            specs.append(_spec_from_object(doc, default_namespace, where))
        else:
            specs.append(_spec_from_wrapper(doc, default_namespace, where))
    return specs


def manifest_files(manifest_dir: Path) -> List[Path]:
    if not manifest_dir.is_dir():
        raise ManifestError(f"Manifest directory not found: {manifest_dir}")
    return sorted(p for p in manifest_dir.iterdir() if p.is_file() and p.suffix in (".yaml", ".yml"))


def load_manifest_set(manifest_dir: Path | str, default_namespace: Optional[str] = None) -> List[ResourceSpec]:
    """Load every ResourceSpec under ``manifest_dir`` in declaration order."""
    manifest_dir = Path(manifest_dir)
    namespace = default_namespace or settings.k8s_namespace

    specs: List[ResourceSpec] = []
    for path in manifest_files(manifest_dir):
        try:
            docs = list(yaml.safe_load_all(path.read_text(encoding="utf-8")))
        except yaml.YAMLError as e:
            raise ManifestError(f"Invalid YAML in {path.name}: {e}") from e
        specs.extend(parse_documents(docs, namespace, path.name))

    validate_manifest_set(specs)
    for spec in specs:
        warn_inline_credentials(spec)
    logger.info("Loaded %d resource(s) from %s", len(specs), manifest_dir)
    return specs


def validate_manifest_set(specs: List[ResourceSpec]) -> None:
    """Reject duplicate identities and dependencies on undeclared resources."""
    seen = {}
    for spec in specs:
        if spec.identity in seen:
            raise ManifestError(
                f"duplicate resource (also declared in {seen[spec.identity]})",
                spec.identity,
            )
        seen[spec.identity] = spec.source

    for spec in specs:
        for dep in spec.depends_on:
            if dep not in seen:
                raise ManifestError(f"depends on undeclared resource {dep}", spec.identity)
