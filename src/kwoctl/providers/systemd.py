"""Systemd provider for restarting host services such as k3s."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Drive host units through ``systemctl``."""

    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def restart(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Restart *unit*."""
        return self._systemctl("restart", unit)

    def is_active(self, unit: str) -> bool:
        """Return True when *unit* reports ``active``."""
        result = self._systemctl("is-active", unit, check=False)
        return result.returncode == 0 and result.stdout.strip() == "active"

    def active_since(self, unit: str) -> str | None:
        """Return the ``ActiveEnterTimestamp`` of *unit*, or ``None`` when unset."""
        args = [self.systemctl_bin, "show", unit, "--property=ActiveEnterTimestamp", "--value"]
        result = self._run_command(args, check=False, error_prefix=f"{self.systemctl_bin} show")
        value = (result.stdout or "").strip()
        return value or None

    def journal(self, unit: str, *, lines: int | None = None, follow: bool = False) -> int:
        """Stream the journal of *unit* to the terminal; returns journalctl's exit code."""
        args = [self.journalctl_bin, "-u", unit, "--no-pager"]
        if lines is not None:
            args.append(f"--lines={lines}")
        if follow:
            args.append("--follow")
        try:
            result = subprocess.run(args, check=False)  # noqa: S603, S607
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        return result.returncode

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdProvider", "SystemdError"]
