"""
Sandboxed evaluation of user scripts.

Scripts from source rules never run inside this process. Each evaluation
spawns a child interpreter, sends it a JSON context on stdin and reads the
string result from stdout. The child sees only the values it is given and is
killed when its time budget runs out or the calling task is cancelled.
"""
import asyncio
import json
import logging
import os
import subprocess
from typing import Any, Dict, Optional, Sequence

from config import settings
from webbook.errors import ScriptError

logger = logging.getLogger(__name__)

SCRIPT_MARKER = "__SCRIPT__"

# Evaluates the script with the context keys as variables; the value of the
# last expression is the result.
NODE_HARNESS = r"""
const ctx = JSON.parse(require('fs').readFileSync(0, 'utf8'));
const out = (function () { with (ctx) { return eval(__SCRIPT__); } }).call(ctx);
let text = '';
if (out !== undefined && out !== null) {
  text = typeof out === 'object' ? JSON.stringify(out) : String(out);
}
process.stdout.write(text);
"""


class ScriptEngine:
    """
    Run scripts in a child process with a bounded execution budget.

    Args:
        command: Interpreter argv; the harness program is appended to it.
        harness: Program text containing SCRIPT_MARKER, which is replaced by
            the script as a JSON string literal.
        timeout: Seconds before the child is killed.
    """

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        harness: str = NODE_HARNESS,
        timeout: Optional[float] = None,
    ):
        self.command = list(command or settings.script_command)
        self.harness = harness
        self.timeout = timeout if timeout is not None else settings.script_timeout

    def _argv(self, script: str) -> list:
        return self.command + [self.harness.replace(SCRIPT_MARKER, json.dumps(script))]

    @staticmethod
    def _payload(value: Any, bindings: Optional[Dict[str, Any]]) -> bytes:
        context = dict(bindings or {})
        context["result"] = value
        return json.dumps(context, ensure_ascii=False, default=str).encode("utf-8")

    @staticmethod
    def _env() -> dict:
        env = dict(os.environ)
        env["PYTHONIOENCODING"] = "utf-8"
        return env

    def _check(self, returncode: int, stdout: bytes, stderr: bytes) -> str:
        if returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise ScriptError(f"Script exited with code {returncode}: {detail[:500]}")
        return stdout.decode("utf-8", errors="replace")

    def evaluate(
        self,
        script: str,
        value: Any = "",
        bindings: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Run a script and wait for it. Blocks the calling thread."""
        try:
            result = subprocess.run(
                self._argv(script),
                input=self._payload(value, bindings),
                capture_output=True,
                timeout=self.timeout,
                env=self._env(),
            )
        except subprocess.TimeoutExpired:
            raise ScriptError(f"Script timed out after {self.timeout} seconds")
        except OSError as e:
            raise ScriptError(f"Script runtime unavailable: {e}") from e

        return self._check(result.returncode, result.stdout, result.stderr)

    async def evaluate_async(
        self,
        script: str,
        value: Any = "",
        bindings: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Run a script without blocking the event loop. Cancelling kills the child."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._argv(script),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except OSError as e:
            raise ScriptError(f"Script runtime unavailable: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(self._payload(value, bindings)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise ScriptError(f"Script timed out after {self.timeout} seconds")
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        return self._check(proc.returncode, stdout, stderr)

    @staticmethod
    async def _kill(proc) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        logger.debug(f"Killed script process {proc.pid}")
