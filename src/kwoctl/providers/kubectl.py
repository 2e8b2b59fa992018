"""kubectl provider used for every interaction with the k3s API server."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class KubectlError(RuntimeError):
    """Raised when a kubectl invocation fails."""


class KubectlNotFoundError(KubectlError):
    """Raised when the requested object does not exist."""


class KubectlConflictError(KubectlError):
    """Raised when a write is rejected because the object changed or exists."""


class KubectlForbiddenError(KubectlError):
    """Raised when the API server denies the request."""


@dataclass(slots=True)
class KubectlProvider:
    """Thin wrapper around the ``kubectl`` binary speaking JSON."""

    kubectl_bin: str = "kubectl"
    kubeconfig: Path | None = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, kind: str, name: str, *, namespace: str | None = None) -> dict[str, Any] | None:
        """Return the object as a mapping, or ``None`` when it does not exist."""
        args = ["get", kind, name, "-o", "json", *self._namespace_args(namespace)]
        try:
            result = self._kubectl(args)
        except KubectlNotFoundError:
            return None
        return self._parse_json(result.stdout, f"get {kind}/{name}")

    def list_objects(
        self,
        kind: str,
        *,
        namespace: str | None = None,
        selector: str | None = None,
        all_namespaces: bool = False,
    ) -> list[dict[str, Any]]:
        """Return the ``items`` of a list query."""
        args = ["get", kind, "-o", "json"]
        args.extend(["-A"] if all_namespaces else self._namespace_args(namespace))
        if selector:
            args.extend(["-l", selector])
        result = self._kubectl(args)
        payload = self._parse_json(result.stdout, f"list {kind}")
        items = payload.get("items", [])
        return [item for item in items if isinstance(item, dict)]

    def exists(self, kind: str, name: str, *, namespace: str | None = None) -> bool:
        """Return True when the object exists."""
        return self.get(kind, name, namespace=namespace) is not None

    def get_yaml(
        self,
        kinds: str,
        name: str | None = None,
        *,
        namespace: str | None = None,
    ) -> str:
        """Return raw YAML for archival snapshots."""
        args = ["get", kinds]
        if name:
            args.append(name)
        args.extend(["-o", "yaml", *self._namespace_args(namespace)])
        return self._kubectl(args).stdout

    def config_view(self) -> dict[str, Any]:
        """Return the minified raw kubeconfig of the current context."""
        result = self._kubectl(["config", "view", "--minify", "--raw", "-o", "json"])
        return self._parse_json(result.stdout, "config view")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def apply(self, manifest: Mapping[str, object]) -> dict[str, Any]:
        """Create or update *manifest* (server-side merge via ``kubectl apply``)."""
        result = self._kubectl(["apply", "-f", "-", "-o", "json"], stdin=json.dumps(manifest))
        return self._parse_json(result.stdout, f"apply {_describe(manifest)}")

    def create(self, manifest: Mapping[str, object]) -> dict[str, Any]:
        """Create *manifest*, failing with a conflict when it already exists."""
        result = self._kubectl(["create", "-f", "-", "-o", "json"], stdin=json.dumps(manifest))
        return self._parse_json(result.stdout, f"create {_describe(manifest)}")

    def replace(self, manifest: Mapping[str, object]) -> dict[str, Any]:
        """Replace *manifest*; a stale ``resourceVersion`` raises a conflict."""
        result = self._kubectl(["replace", "-f", "-", "-o", "json"], stdin=json.dumps(manifest))
        return self._parse_json(result.stdout, f"replace {_describe(manifest)}")

    def delete(self, kind: str, name: str, *, namespace: str | None = None) -> bool:
        """Delete an object; return False when it was already absent."""
        args = ["delete", kind, name, "--ignore-not-found", *self._namespace_args(namespace)]
        result = self._kubectl(args)
        return bool(result.stdout.strip())

    def delete_selected(
        self,
        kind: str,
        selector: str,
        *,
        namespace: str | None = None,
    ) -> None:
        """Delete every object of *kind* matching the label *selector*."""
        args = ["delete", kind, "-l", selector, "--ignore-not-found"]
        args.extend(self._namespace_args(namespace))
        self._kubectl(args)

    def rollout_restart(self, kind: str, name: str, *, namespace: str | None = None) -> None:
        """Trigger a rolling restart of a workload."""
        self._kubectl(["rollout", "restart", f"{kind}/{name}", *self._namespace_args(namespace)])

    def rollout_status(
        self,
        kind: str,
        name: str,
        *,
        namespace: str | None = None,
        timeout: float = 10.0,
    ) -> bool:
        """Return True when the rollout completed within *timeout* seconds."""
        args = [
            "rollout",
            "status",
            f"{kind}/{name}",
            f"--timeout={int(max(timeout, 1))}s",
            *self._namespace_args(namespace),
        ]
        result = self._kubectl(args, check=False)
        return result.returncode == 0

    def stream_logs(
        self,
        *,
        namespace: str,
        pod: str | None = None,
        selector: str | None = None,
        tail: int | None = None,
        follow: bool = False,
    ) -> int:
        """Stream logs of one pod or a label selection; returns kubectl's exit code.

        Output goes straight to the terminal so ``--follow`` behaves as usual.
        """
        if (pod is None) == (selector is None):
            raise ValueError("stream_logs needs exactly one of pod or selector.")
        args = ["logs", *self._namespace_args(namespace), "--all-containers=true"]
        if pod is not None:
            args.append(f"pod/{pod}")
        else:
            args.extend(["-l", str(selector), "--prefix"])
        if tail is not None:
            args.append(f"--tail={tail}")
        if follow:
            args.append("--follow")
        command = [self.kubectl_bin]
        if self.kubeconfig is not None:
            command.extend(["--kubeconfig", str(self.kubeconfig)])
        command.extend(args)
        try:
            result = subprocess.run(command, check=False)  # noqa: S603, S607
        except FileNotFoundError as exc:
            raise KubectlError(f"{command[0]} not found: {exc}") from exc
        return result.returncode

    def probe(self, kubeconfig: Path, args: Sequence[str]) -> bool:
        """Run a read-only command with an alternate kubeconfig."""
        command = [self.kubectl_bin, "--kubeconfig", str(kubeconfig), *args]
        result = self._run_command(command, check=False, error_prefix="kubectl probe")
        return result.returncode == 0

    # ------------------------------------------------------------------
    def _namespace_args(self, namespace: str | None) -> list[str]:
        return ["-n", namespace] if namespace else []

    def _kubectl(
        self,
        args: Sequence[str],
        *,
        stdin: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.kubectl_bin]
        if self.kubeconfig is not None:
            command.extend(["--kubeconfig", str(self.kubeconfig)])
        command.extend(args)
        return self._run_command(
            command,
            check=check,
            error_prefix=f"kubectl {' '.join(args[:2])}",
            stdin=stdin,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        stdin: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                input=stdin,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise KubectlError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            stdout = (result.stdout or "").strip()
            message = stderr or stdout or "no output"
            raise _classify(f"{error_prefix} failed (exit {result.returncode}): {message}", message)
        return result

    @staticmethod
    def _parse_json(text: str, label: str) -> dict[str, Any]:
        try:
            payload = json.loads(text or "{}")
        except json.JSONDecodeError as exc:
            raise KubectlError(f"kubectl {label} returned invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise KubectlError(f"kubectl {label} returned a non-object payload.")
        return payload


def _classify(full_message: str, stderr: str) -> KubectlError:
    lowered = stderr.lower()
    if "(notfound)" in lowered or "not found" in lowered:
        return KubectlNotFoundError(full_message)
    if "(forbidden)" in lowered or "forbidden" in lowered:
        return KubectlForbiddenError(full_message)
    if (
        "(conflict)" in lowered
        or "(alreadyexists)" in lowered
        or "the object has been modified" in lowered
    ):
        return KubectlConflictError(full_message)
    return KubectlError(full_message)


def _describe(manifest: Mapping[str, object]) -> str:
    metadata = manifest.get("metadata")
    name = metadata.get("name") if isinstance(metadata, Mapping) else None
    return f"{manifest.get('kind', 'object')}/{name or '?'}"


__all__ = [
    "KubectlConflictError",
    "KubectlError",
    "KubectlForbiddenError",
    "KubectlNotFoundError",
    "KubectlProvider",
]
