import asyncio
import sys
from pathlib import Path

from rexa.rexa_errors import ParseError
from rexa.rexa_parser import parse
from rexa.rexa_runtime import ScriptRunner
from rexa.rexa_printer import Printer
from rexa.rexa_config import RexaConfig


# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


def needs_more(source: str) -> bool:
    """True when `source` only fails to parse because a block is still open."""
    try:
        parse(source)
    except ParseError as e:
        return e.message.startswith(("Missing ", "Unterminated block literal"))
    return False


def report(result, printer: Printer) -> bool:
    """Print a run's stdout, then its value or error. False when the run failed."""
    for line in result.stdout:
        print(line)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        return False
    if result.value not in (None, ""):
        print(printer.pformat(result.value))
    return True


def make_runner(source_dir: Path) -> ScriptRunner:
    runner = ScriptRunner(config=RexaConfig.from_env())
    runner.source_dir = str(source_dir.resolve())
    return runner


async def run_script_file(file_path: str, args=()):
    """Run a Rexa script file non-interactively; exits with status 1 on failure."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    runner = make_runner(p.parent)
    result = await runner.handle_script(source, args=list(args))
    if not report(result, Printer()):
        raise SystemExit(1)


async def repl():
    print("Rexa REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")
    runner = make_runner(Path.cwd())
    printer = Printer()
    buffer = []

    while True:
        raw = await ainput(".. " if buffer else ">> ")
        if raw == "":
            print("\nExiting.")
            break
        line = raw.rstrip("\n")
        if not buffer and line.strip().lower() == "exit":
            break
        if not buffer and not line.strip():
            continue

        # DO/IF blocks and block literals span several lines
        buffer.append(line)
        source = "\n".join(buffer)
        if needs_more(source):
            continue
        buffer = []
        report(await runner.handle_script(source), printer)


async def amain(argv):
    """Run a script file when provided, otherwise start the interactive REPL."""
    if argv and not argv[0].startswith("-"):
        await run_script_file(argv[0], argv[1:])
        return
    await repl()


def main():
    try:
        asyncio.run(amain(sys.argv[1:]))
    except KeyboardInterrupt:
        print("\nExiting.")


if __name__ == "__main__":
    main()
