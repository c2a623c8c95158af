from __future__ import annotations

import asyncio
import logging
import shlex
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from prometheus_client import Counter

from peergate.errors import ExternalUtilityUnavailable

logger = logging.getLogger("peergate.wireguard.runner")

_WG_COMMANDS_TOTAL = Counter(
    "peergate_wg_commands_total",
    "External WireGuard control commands executed by peergate",
    labelnames=["command", "result"],
)

# Secondary timeout for reaping a killed process.
_KILL_WAIT_TIMEOUT = 5


@dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stdout + "\n" + self.stderr).strip()


class CommandRunner(Protocol):
    async def run(self, args: Sequence[str], *, input: str | None = None) -> CommandResult: ...


def _command_label(args: Sequence[str]) -> str:
    # "wg show" / "wg-quick up": binary basename + subcommand keeps label cardinality low.
    if not args:
        return "unknown"
    binary = str(args[0]).rsplit("/", 1)[-1]
    return f"{binary} {args[1]}" if len(args) > 1 else binary


class SubprocessRunner:
    def __init__(self, *, timeout: float | None = 15.0, dry_run: bool = False) -> None:
        self.timeout = timeout
        self.dry_run = dry_run

    async def run(self, args: Sequence[str], *, input: str | None = None) -> CommandResult:
        cmd = tuple(str(a) for a in args)
        label = _command_label(cmd)
        if self.dry_run:
            logger.info("dry_run command=%s", shlex.join(cmd))
            _WG_COMMANDS_TOTAL.labels(label, "dry_run").inc()
            return CommandResult(args=cmd, returncode=0, stdout="", stderr=f"dry-run: {shlex.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            _WG_COMMANDS_TOTAL.labels(label, "missing").inc()
            raise ExternalUtilityUnavailable(f"{cmd[0]} binary not found", command=label) from exc
        except OSError as exc:
            _WG_COMMANDS_TOTAL.labels(label, "error").inc()
            raise ExternalUtilityUnavailable(f"cannot start {cmd[0]}: {exc}", command=label) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input=input.encode("utf-8") if input is not None else None),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            try:
                await asyncio.wait_for(proc.wait(), timeout=_KILL_WAIT_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("command_not_reaped command=%s", label)
            _WG_COMMANDS_TOTAL.labels(label, "timeout").inc()
            raise ExternalUtilityUnavailable(f"{label} timed out after {self.timeout}s", command=label) from exc

        result = CommandResult(
            args=cmd,
            returncode=proc.returncode if proc.returncode is not None else 1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        _WG_COMMANDS_TOTAL.labels(label, "ok" if result.ok else "failed").inc()
        if not result.ok:
            logger.warning("command_failed command=%s rc=%s output=%s", label, result.returncode, result.output[:400])
        return result


@dataclass
class _Script:
    prefix: tuple[str, ...]
    result: CommandResult | None = None
    error: Exception | None = None
    handler: Callable[[tuple[str, ...], str | None], CommandResult] | None = None


@dataclass
class FakeCommandRunner:
    """
    Deterministic stand-in for `SubprocessRunner`.

    Every call is recorded as `(args, input)`. Responses are scripted by argument
    prefix; the longest matching prefix wins, and unscripted commands succeed
    with empty output.
    """

    calls: list[tuple[tuple[str, ...], str | None]] = field(default_factory=list)
    _scripts: list[_Script] = field(default_factory=list)

    def script(
        self,
        *prefix: str,
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
    ) -> None:
        self._scripts.append(
            _Script(prefix=tuple(prefix), result=CommandResult(args=tuple(prefix), returncode=returncode, stdout=stdout, stderr=stderr))
        )

    def fail_with(self, *prefix: str, error: Exception) -> None:
        self._scripts.append(_Script(prefix=tuple(prefix), error=error))

    def respond(self, *prefix: str, handler: Callable[[tuple[str, ...], str | None], CommandResult]) -> None:
        """Compute the result from the actual arguments and stdin."""
        self._scripts.append(_Script(prefix=tuple(prefix), handler=handler))

    def commands(self) -> list[tuple[str, ...]]:
        return [args for args, _ in self.calls]

    async def run(self, args: Sequence[str], *, input: str | None = None) -> CommandResult:
        cmd = tuple(str(a) for a in args)
        self.calls.append((cmd, input))

        best: _Script | None = None
        for row in self._scripts:
            if cmd[: len(row.prefix)] != row.prefix:
                continue
            # Later scripts override earlier ones with the same prefix length.
            if best is None or len(row.prefix) >= len(best.prefix):
                best = row

        if best is None:
            return CommandResult(args=cmd, returncode=0)
        if best.error is not None:
            raise best.error
        if best.handler is not None:
            return best.handler(cmd, input)
        assert best.result is not None
        return CommandResult(args=cmd, returncode=best.result.returncode, stdout=best.result.stdout, stderr=best.result.stderr)
