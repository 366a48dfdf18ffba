import asyncio
import os
import sys
from pathlib import Path

from slashscript.slash_datatypes import LexError
from slashscript.slash_http import HttpLLM
from slashscript.slash_lexer import Lexer
from slashscript.slash_printer import Printer
from slashscript.slash_runtime import Capabilities, HumanInput, ScriptRegistry, ScriptRunner
from slashscript.slash_sandbox import SubprocessCodeExecutor

SCRIPT_SUFFIX = ".slash"


# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


class ConsoleInput(HumanInput):
    """Answers /prompt and /confirm from the terminal; end of input cancels."""

    async def request_input(self, message: str):
        raw = await ainput(f"{message} " if message else "? ")
        if raw == "":
            return None
        return raw.rstrip("\n")

    async def request_confirmation(self, message: str):
        while True:
            raw = await ainput(f"{message} [y/n] " if message else "[y/n] ")
            if raw == "":
                return None
            answer = raw.strip().lower()
            if answer in ("y", "yes"):
                return True
            if answer in ("n", "no"):
                return False


def print_effect(topic: str, message: str):
    if topic == 'stdout':
        print(message)


def build_runner(input=None, scripts_dir=None) -> ScriptRunner:
    """A runner wired to the console, a subprocess code executor and, when configured, an HTTP LLM."""
    llm = None
    if os.environ.get("SLASH_LLM_URL") or os.environ.get("SLASH_LLM_API_KEY"):
        llm = HttpLLM.from_env()
    capabilities = Capabilities(llm=llm, code=SubprocessCodeExecutor(), human=ConsoleInput(), output=print_effect)
    scripts = ScriptRegistry()
    if scripts_dir is not None:
        for path in sorted(Path(scripts_dir).glob(f"*{SCRIPT_SUFFIX}")):
            scripts.register(path.stem, path.read_text(encoding="utf-8"))
    return ScriptRunner(capabilities, scripts, input=input)


def needs_more_input(text: str) -> bool:
    """True while a REPL entry still has an open block or string."""
    try:
        Lexer().tokenize(text)
    except LexError as e:
        return e.message.startswith(("unclosed", "unterminated"))
    return False


async def run_script_file(file_path: str, input: str = ""):
    """Run a script file non-interactively and exit with appropriate status."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    runner = build_runner(input=input, scripts_dir=p.parent)
    result = await runner.handle_script(source)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)


async def main():
    """Run a script file when provided, otherwise start the interactive REPL."""
    if len(sys.argv) > 1:
        arg = sys.argv[1]
        if not arg.startswith("-"):
            await run_script_file(arg, " ".join(sys.argv[2:]))
            return

    print("slashscript REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    runner = build_runner(scripts_dir=Path.cwd())
    printer = Printer()

    while True:
        try:
            raw = await ainput(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()
            if not line:
                continue
            if line == "exit":
                break

            entry = raw.rstrip("\n")
            while needs_more_input(entry):
                more = await ainput(".. ")
                if more == "":
                    raise EOFError
                entry += "\n" + more.rstrip("\n")

            result = await runner.handle_script(entry)
            if result.status == 'error':
                print(result.format_error(), file=sys.stderr)
                continue
            # /echo output was already printed as it happened
            if result.value is not None and not result.output:
                print(printer.pformat(result.value))

        except EOFError:
            print("\nExiting.")
            break


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")
