"""Command-line interface for the OpenSubtitles AI client.

WHY: Users (and scripts) need to log in, check credits, list languages,
and run transcription, translation, and language detection jobs from the
terminal, with the same session handling and polling as any other front
end.

HOW: argparse subcommands, each an async function run via asyncio.run().
Every command builds one OpenSubtitlesAIClient and one Orchestrator.
Status messages go to stderr; results (subtitle text, language lists,
credits) go to stdout or to --output.

RULES:
- Credentials come from --username/--password, else .env, else a prompt
- Job commands authenticate first and fail with exit code 1 if they cannot
- Ctrl-C while a job is running cancels the job and exits with 130
- Configuration errors (missing API key, unsupported file) exit with 1
- -v enables DEBUG logging to stderr
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import inspect
import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional

from opensubs_ai.api.client import OpenSubtitlesAIClient
from opensubs_ai.api.models import JobKind
from opensubs_ai.config import (
    POLLING_INTERVAL_SECONDS,
    POLLING_TIMEOUT_SECONDS,
    PollingSettings,
)
from opensubs_ai.core.errors import ServiceError, user_message
from opensubs_ai.core.poller import JobOutcome
from opensubs_ai.core.session import Credentials, TokenCache
from opensubs_ai.facade import JobHandle, Orchestrator

logger = logging.getLogger(__name__)


def _status(msg: str) -> None:
    """Print a status message to stderr."""
    print(msg, file=sys.stderr, flush=True)


def _token_cache() -> TokenCache:
    return TokenCache()


def _env_credentials() -> Optional[Credentials]:
    username = os.getenv("OPENSUBS_USERNAME", "").strip()
    password = os.getenv("OPENSUBS_PASSWORD", "")
    if username and password:
        return Credentials(username, password)
    return None


@asynccontextmanager
async def _orchestrator(args: argparse.Namespace) -> AsyncIterator[Orchestrator]:
    interval = getattr(args, "interval", None)
    timeout = getattr(args, "timeout", None)
    settings = PollingSettings(
        interval_seconds=POLLING_INTERVAL_SECONDS if interval is None else interval,
        timeout_seconds=POLLING_TIMEOUT_SECONDS if timeout is None else timeout,
    )
    async with OpenSubtitlesAIClient() as client:
        yield Orchestrator(
            client,
            credentials=_env_credentials(),
            token_cache=_token_cache(),
            settings=settings,
        )


async def _require_session(orchestrator: Orchestrator) -> None:
    if not await orchestrator.ensure_authenticated():
        error = orchestrator.last_error
        raise SystemExit(
            "Error: {}".format(
                user_message(error, "Login") if error else "Not logged in. Run 'login' first."
            )
        )


async def _wait_or_cancel(orchestrator: Orchestrator, handle: JobHandle) -> JobOutcome:
    """Wait for a job; cancel it if the wait is interrupted (Ctrl-C)."""
    try:
        return await orchestrator.wait(handle)
    except asyncio.CancelledError:
        orchestrator.cancel(handle)
        _status("\nCancelled by user.")
        raise


async def _emit_result(orchestrator: Orchestrator, outcome: JobOutcome, output: Optional[str]) -> None:
    if not outcome.succeeded:
        raise SystemExit("Error: {}".format(outcome.message))
    _status(outcome.message)
    if orchestrator.credits is not None:
        _status("Credits left: {}".format(orchestrator.credits))
    text = await orchestrator.download_result(outcome)
    if output:
        Path(output).write_text(text, encoding="utf-8")
        _status("Saved: {}".format(output))
    else:
        sys.stdout.write(text)
        if not text.endswith("\n"):
            sys.stdout.write("\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _cmd_login(args: argparse.Namespace) -> None:
    username = args.username or os.getenv("OPENSUBS_USERNAME", "").strip()
    if not username:
        username = input("Username: ").strip()
    password = args.password or os.getenv("OPENSUBS_PASSWORD", "")
    if not password:
        password = getpass.getpass("Password: ")

    async with _orchestrator(args) as orchestrator:
        if not await orchestrator.login(username, password):
            error = orchestrator.last_error
            raise SystemExit("Error: {}".format(user_message(error, "Login") if error else "Login failed"))
        _status("Logged in as {}".format(username))
        if orchestrator.credits is not None:
            print("Credits: {}".format(orchestrator.credits))


async def _cmd_logout(args: argparse.Namespace) -> None:
    _token_cache().clear()
    _status("Logged out.")


async def _cmd_credits(args: argparse.Namespace) -> None:
    async with _orchestrator(args) as orchestrator:
        await _require_session(orchestrator)
        credits = await orchestrator.refresh_credits()
        print(credits.remaining)


async def _cmd_languages(args: argparse.Namespace) -> None:
    kind = JobKind(args.kind)
    async with _orchestrator(args) as orchestrator:
        await _require_session(orchestrator)
        catalog = await orchestrator.load_catalog(kind, force=args.refresh)
        _status("Providers: {}".format(", ".join(catalog.providers) or "(none)"))
        for option in await orchestrator.language_options(kind, args.provider):
            if args.provider and not option.compatible:
                continue
            print("{}\t{}\t{}".format(option.canonical_id, option.display_name, ",".join(option.available_in)))


async def _cmd_transcribe(args: argparse.Namespace) -> None:
    path = _existing_file(args.file)
    async with _orchestrator(args) as orchestrator:
        await _require_session(orchestrator)
        handle = await orchestrator.submit(
            path,
            JobKind.TRANSCRIPTION,
            provider=args.provider,
            language=args.language,
            on_status=_status,
        )
        outcome = await _wait_or_cancel(orchestrator, handle)
        await _emit_result(orchestrator, outcome, args.output)


async def _cmd_translate(args: argparse.Namespace) -> None:
    path = _existing_file(args.file)
    async with _orchestrator(args) as orchestrator:
        await _require_session(orchestrator)
        handle = await orchestrator.submit(
            path,
            JobKind.TRANSLATION,
            provider=args.provider,
            language=args.source,
            translate_to=args.target,
            on_status=_status,
        )
        outcome = await _wait_or_cancel(orchestrator, handle)
        await _emit_result(orchestrator, outcome, args.output)


async def _cmd_detect(args: argparse.Namespace) -> None:
    path = _existing_file(args.file)
    async with _orchestrator(args) as orchestrator:
        await _require_session(orchestrator)
        handle = await orchestrator.submit(
            path, JobKind.LANGUAGE_DETECTION, duration=args.duration, on_status=_status
        )
        outcome = await _wait_or_cancel(orchestrator, handle)
        if not outcome.succeeded:
            raise SystemExit("Error: {}".format(outcome.message))
        language = (outcome.data or {}).get("language") or {}
        print("{}\t{}".format(language.get("ISO_639_1", ""), language.get("name", "")))


def _cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("opensubs_ai.server.app:app", host=args.host, port=args.port, log_level="info")


def _existing_file(value: str) -> Path:
    path = Path(value).expanduser().resolve()
    if not path.is_file():
        raise SystemExit("Error: File not found: {}".format(path))
    return path


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the CLI.

    Separate from main() so tests can inspect the parser.
    """
    parser = argparse.ArgumentParser(
        prog="opensubs_ai",
        description="Transcribe, translate, and detect the language of media and "
                    "subtitle files with the OpenSubtitles AI service.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    commands = parser.add_subparsers(dest="command", required=True)

    login = commands.add_parser("login", help="Log in and cache the session token.")
    login.add_argument("--username", default=None, help="Account username (default: .env).")
    login.add_argument("--password", default=None, help="Account password (default: .env or prompt).")
    login.set_defaults(handler=_cmd_login)

    logout = commands.add_parser("logout", help="Forget the cached session token.")
    logout.set_defaults(handler=_cmd_logout)

    credits = commands.add_parser("credits", help="Show the remaining credit balance.")
    credits.set_defaults(handler=_cmd_credits)

    languages = commands.add_parser("languages", help="List consolidated languages.")
    languages.add_argument("kind", choices=["transcription", "translation"])
    languages.add_argument("--provider", default=None, help="Only languages this provider supports.")
    languages.add_argument("--refresh", action="store_true", help="Ignore cached catalog data.")
    languages.set_defaults(handler=_cmd_languages)

    for name, help_text in (
        ("transcribe", "Transcribe an audio or video file."),
        ("translate", "Translate a subtitle file."),
        ("detect", "Detect the spoken or written language of a file."),
    ):
        job = commands.add_parser(name, help=help_text)
        job.add_argument("file", help="Path to the input file.")
        job.add_argument(
            "--interval", type=float, default=None,
            help="Seconds between status checks (default: POLLING_INTERVAL_SECONDS).",
        )
        job.add_argument(
            "--timeout", type=float, default=None,
            help="Give up after this many seconds (default: POLLING_TIMEOUT_SECONDS).",
        )
        if name == "transcribe":
            job.add_argument("--provider", required=True, help="Transcription model id.")
            job.add_argument(
                "--language", default="auto-detect",
                help="Spoken language id, e.g. 'en' (default: %(default)s).",
            )
            job.add_argument("--output", default=None, help="Write subtitles here instead of stdout.")
            job.set_defaults(handler=_cmd_transcribe)
        elif name == "translate":
            job.add_argument("--provider", required=True, help="Translation model id.")
            job.add_argument("--to", dest="target", required=True, help="Target language id.")
            job.add_argument(
                "--from", dest="source", default="auto-detect",
                help="Source language id (default: %(default)s).",
            )
            job.add_argument("--output", default=None, help="Write subtitles here instead of stdout.")
            job.set_defaults(handler=_cmd_translate)
        else:
            job.add_argument("--duration", type=float, default=None, help="Media duration in seconds.")
            job.set_defaults(handler=_cmd_detect)

    serve = commands.add_parser("serve", help="Run the local HTTP bridge.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8765)
    serve.set_defaults(handler=_cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for ``python -m opensubs_ai``.

    RULES:
    - argv=None means use sys.argv (normal CLI invocation)
    - Explicit argv is for testing
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if not inspect.iscoroutinefunction(args.handler):
        args.handler(args)
        return

    try:
        asyncio.run(args.handler(args))
    except KeyboardInterrupt:
        sys.exit(130)
    except ServiceError as e:
        print("Error: {}".format(user_message(e, "Request")), file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        # Config errors (missing API key, unsupported language or file type)
        print("Error: {}".format(e), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
