"""Foreground script execution on the local host."""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from kiln.backends.base import ScriptResult
from kiln.errors import BuildError

OUTPUT_TAIL = 2000


@dataclass(slots=True)
class LocalScriptRunner:
    """Runs build scripts in their own process group so cancellation reaches children."""

    name: str = "local"
    shell: str = "bash"

    def command(self, script: Path) -> list[str]:
        if script.suffix in (".bat", ".cmd"):
            return ["cmd.exe", "/d", "/c", str(script)]
        if script.suffix == ".ps1":
            return ["powershell", "-NoProfile", "-ExecutionPolicy", "Bypass", "-File", str(script)]
        shell = shutil.which(self.shell) or self.shell
        return [shell, "-e", str(script)]

    def run(
        self,
        script: Path,
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout: float | None,
    ) -> ScriptResult:
        cmd = self.command(script)
        started = time.monotonic()
        try:
            process = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                env=dict(env),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                **_session_options(),
            )
        except OSError as exc:
            raise BuildError(
                "Build script could not be started.",
                hint=f"Ensure `{cmd[0]}` is installed.",
                context={"runner": self.name, "script": str(script), "error": str(exc)},
            ) from exc

        try:
            output, _ = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            output = _terminate(process)
            raise BuildError(
                f"Build script timed out after {timeout}s.",
                hint="Raise the configured timeout or fix the hanging step.",
                context={
                    "runner": self.name,
                    "script": str(script),
                    "command": " ".join(cmd),
                    "output": output[-OUTPUT_TAIL:],
                },
                output=output,
            ) from exc
        except BaseException:
            _terminate(process)
            raise
        return ScriptResult(
            returncode=process.returncode,
            output=output or "",
            duration=time.monotonic() - started,
        )


def _session_options() -> dict[str, object]:
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _terminate(process: subprocess.Popen[str]) -> str:
    """Kill the script and everything it spawned; return whatever it printed."""
    if os.name == "nt":
        process.kill()
    else:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    output, _ = process.communicate()
    return output or ""


__all__ = ["LocalScriptRunner"]
