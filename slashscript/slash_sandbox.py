"""
A code-execution capability that runs `/func js|code` bodies in an external
interpreter process.

Bound parameters are written to the child's stdin as JSON and the body's
return value is read back as JSON from stdout. Anything the body prints goes
to stderr so it cannot corrupt the result.
"""
import asyncio
import json
import os
import shlex
import tempfile
from typing import Any, Dict, List, Optional, Sequence, Tuple

from slashscript.slash_runtime import CodeExecutor
from slashscript.slash_serialize import deserialize, serialize

DEFAULT_COMMAND = "node"

JS_WRAPPER = """\
console.log = (...a) => console.error(...a);
const __params = JSON.parse(require('fs').readFileSync(0, 'utf8') || '{{}}');
const __fn = async ({names}) => {{
{body}
}};
Promise.resolve(__fn({args})).then(
  (v) => process.stdout.write(JSON.stringify(v === undefined ? null : v)),
  (e) => {{ console.error(String((e && e.stack) || e)); process.exit(1); }}
);
"""

PY_WRAPPER = """\
import json, sys
__params = json.load(sys.stdin)
__out = sys.stdout
sys.stdout = sys.stderr
def __fn({names}):
{body}
__out.write(json.dumps(__fn(**__params)))
"""


class CodeExecutionError(Exception):
    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class CodeTimeoutError(CodeExecutionError):
    pass


def truncate_output(text: str, max_bytes: int = 100 * 1024) -> Tuple[str, bool]:
    """Truncates output to max_bytes and appends a marker if truncated."""
    if not text:
        return "", False
    encoded = text.encode("utf-8", errors="ignore")
    if len(encoded) <= max_bytes:
        return text, False
    marker = b"\n[TRUNCATED]"
    limit = max(0, max_bytes - len(marker))
    return (encoded[:limit] + marker).decode("utf-8", errors="ignore"), True


class SubprocessCodeExecutor(CodeExecutor):
    """Runs each body in a fresh child process inside a temporary directory.

    The command comes from the constructor, then SLASH_CODE_COMMAND, then
    `node`. A command whose program name starts with "python" gets the Python
    wrapper; anything else is treated as a JavaScript runtime.
    """

    def __init__(self, command: Optional[Sequence[str]] = None, timeout: Optional[float] = None,
                 max_output_bytes: int = 100 * 1024, env: Optional[Dict[str, str]] = None):
        if command is None:
            command = shlex.split(os.environ.get("SLASH_CODE_COMMAND", DEFAULT_COMMAND))
        elif isinstance(command, str):
            command = shlex.split(command)
        self.command: List[str] = list(command)
        self.timeout = timeout
        self.max_output_bytes = max_output_bytes
        self.env = env

    @property
    def is_python(self) -> bool:
        return os.path.basename(self.command[0]).startswith("python")

    def wrap(self, body: str, params: Dict[str, Any]) -> str:
        names = list(params.keys())
        if self.is_python:
            indented = "\n".join("    " + line for line in (body or "pass").splitlines())
            return PY_WRAPPER.format(names=", ".join(names), body=indented)
        args = ", ".join(f"__params[{json.dumps(n)}]" for n in names)
        return JS_WRAPPER.format(names=", ".join(names), body=body, args=args)

    async def execute(self, body: str, params: Dict[str, Any]) -> Any:
        program = self.wrap(body, params)
        payload = serialize(params, fmt='json', pretty=False).encode("utf-8")
        suffix = ".py" if self.is_python else ".js"
        with tempfile.TemporaryDirectory(prefix="slash_code_") as tmpdir:
            path = os.path.join(tmpdir, "main" + suffix)
            with open(path, "w", encoding="utf-8") as f:
                f.write(program)
            proc = await asyncio.create_subprocess_exec(
                *self.command, path,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=tmpdir,
                env=self.env,
            )
            try:
                if self.timeout is None:
                    out, err = await proc.communicate(payload)
                else:
                    out, err = await asyncio.wait_for(proc.communicate(payload), self.timeout)
            except asyncio.TimeoutError:
                await self._kill(proc)
                raise CodeTimeoutError(f"code body timed out after {self.timeout}s") from None
            except asyncio.CancelledError:
                await self._kill(proc)
                raise

        stderr, _ = truncate_output(err.decode("utf-8", errors="replace"), self.max_output_bytes)
        if proc.returncode != 0:
            lines = stderr.strip().splitlines()
            # Python tracebacks end with the message, JS stacks start with it
            detail = (lines[-1] if self.is_python else lines[0]) if lines else f"exit code {proc.returncode}"
            raise CodeExecutionError(detail, proc.returncode, stderr)
        text = out.decode("utf-8", errors="replace").strip()
        if not text:
            return None
        return deserialize(text, fmt='json')

    async def _kill(self, proc):
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
