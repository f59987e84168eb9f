"""
Meeting Copilot command line.

Usage:
    meeting-copilot devices
    meeting-copilot record [--device ID] [--mode MODE] [--provider ID] [--title TITLE] [--no-save]
    meeting-copilot meetings
    meeting-copilot show ID [--markdown]
    meeting-copilot config [KEY [VALUE]]

Ctrl+C stops a recording and saves it.
"""

import argparse
import asyncio
import signal
import sys
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv

from .capture import CaptureError, list_devices
from .logger import log_exception
from .meeting_store import JsonMeetingStore
from .providers import MeetingMode, ProviderGateway, get_available_providers
from .session import MeetingSession, SessionState
from .transcript import generate_markdown
from .transcription_client import MissingCredential, StreamConnectionError
from .utils import (
    ConfigManager,
    apply_runtime_settings,
    build_capture_session,
    build_provider_config,
    build_transcription_factory,
    get_meetings_path,
    get_transcription_credential,
    update_setting,
)


def cmd_devices(args) -> int:
    try:
        devices = list_devices()
    except OSError as e:
        print(f"[!] Could not query audio devices: {e}")
        return 1
    if not devices:
        print("No input devices found.")
        return 0
    for device in devices:
        print(f"{device.id:>4}  {device.label}")
    return 0


def _print_insights(insights):
    for insight in insights:
        print(f"  >> [{insight.type.value}] {insight.content}")


def _print_segment(segment):
    if segment.is_final:
        print(f"[{segment.timestamp}] {segment.speaker}: {segment.text}")


async def run_session(args, stop_event: Optional[asyncio.Event] = None) -> int:
    """Record until Ctrl+C (or stop_event), then save unless --no-save."""
    closed = asyncio.Event()

    def on_state(state):
        if state is SessionState.CLOSED:
            closed.set()

    gateway = ProviderGateway(build_provider_config(args.provider))
    session = MeetingSession(
        gateway,
        credential=get_transcription_credential(),
        device_id=args.device or ConfigManager.get_config_value('audio', 'device_id'),
        mode=args.mode or ConfigManager.get_config_value('insights', 'mode') or "general",
        capture=build_capture_session(),
        transcription_factory=build_transcription_factory(),
        analysis_period=ConfigManager.get_config_value('insights', 'interval_seconds') or 5.0,
        feed_limit=ConfigManager.get_config_value('insights', 'feed_limit') or 20,
        on_segment=_print_segment,
        on_insights=_print_insights,
        on_state=on_state,
    )

    if not session.has_credential():
        print(f"[!] No API key for '{gateway.provider_id}'. Showing mock insights.")

    if stop_event is None:
        stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows: Ctrl+C surfaces as KeyboardInterrupt instead
            pass

    # Ctrl+C must be able to interrupt the connection handshake too
    starting = asyncio.create_task(session.start())
    stopped = asyncio.create_task(stop_event.wait())
    try:
        await asyncio.wait({starting, stopped}, return_when=asyncio.FIRST_COMPLETED)
        if starting.done():
            try:
                starting.result()
            except (MissingCredential, StreamConnectionError, CaptureError):
                print(f"[!] {session.error}")
                return 1
            if session.is_recording:
                print("Recording. Press Ctrl+C to stop.\n")
                ended = asyncio.create_task(closed.wait())
                await asyncio.wait({ended, stopped}, return_when=asyncio.FIRST_COMPLETED)
                ended.cancel()
    finally:
        stopped.cancel()
        if session.is_recording:
            print("\nStopping...")
        await session.stop()
        if not starting.done():
            # Stopped mid-connect; don't wait for the handshake to finish
            starting.cancel()
            await asyncio.gather(starting, return_exceptions=True)

    if session.error:
        print(f"[!] {session.error}")

    if not args.no_save:
        if session.aggregator.final_segments():
            store = JsonMeetingStore(get_meetings_path())
            meeting_id = session.save(store, args.title)
            print(f"Saved meeting {meeting_id} to {store.path}")
        else:
            print("Nothing was transcribed; not saving.")
    return 1 if session.error else 0


def cmd_record(args) -> int:
    try:
        return asyncio.run(run_session(args))
    except KeyboardInterrupt:
        return 0


def cmd_meetings(args) -> int:
    store = JsonMeetingStore(get_meetings_path())
    meetings = store.list_meetings()
    if not meetings:
        print("No saved meetings.")
        return 0
    for meeting in meetings:
        minutes = meeting.duration // 60
        print(f"{meeting.id:>4}  {meeting.date}  {minutes:>3} min  {meeting.title}")
    return 0


def cmd_show(args) -> int:
    store = JsonMeetingStore(get_meetings_path())
    meeting = store.get_meeting_detail(args.id)
    if meeting is None:
        print(f"[!] Meeting {args.id} not found")
        return 1

    if args.markdown:
        try:
            started_at = datetime.fromisoformat(meeting.date)
        except ValueError:
            started_at = None
        lines = [(row.speaker, row.text, row.timestamp / 1000) for row in meeting.transcripts]
        print(generate_markdown(meeting.title, lines, started_at=started_at, duration_seconds=meeting.duration))
        return 0

    print(f"{meeting.title} ({meeting.date}, {meeting.duration // 60} min)")
    if meeting.summary:
        print(f"\n{meeting.summary}\n")
    for row in meeting.transcripts:
        clock = datetime.fromtimestamp(row.timestamp / 1000).strftime("%H:%M:%S")
        print(f"[{clock}] {row.speaker}: {row.text}")
    return 0


def _flatten(section, prefix=""):
    for key, value in section.items():
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            yield from _flatten(value, path)
        else:
            yield path, value


def cmd_config(args) -> int:
    """Print all settings, print one, or set one and save it."""
    if args.key is None:
        for path, value in _flatten(ConfigManager.get_config_section()):
            print(f"{path} = {value}")
        return 0

    keys = args.key.split(".")
    if ConfigManager.get_schema_item(*keys) is None:
        print(f"[!] Unknown setting '{args.key}'")
        return 1
    if args.value is None:
        print(ConfigManager.get_config_value(*keys))
        return 0

    try:
        value = update_setting(args.key, args.value)
    except ValueError as e:
        print(f"[!] {e}")
        return 1
    print(f"{args.key} = {value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="meeting-copilot", description="Live meeting transcription with AI insights")
    subparsers = parser.add_subparsers(dest="command", required=True)

    devices = subparsers.add_parser("devices", help="List audio input devices")
    devices.set_defaults(func=cmd_devices)

    record = subparsers.add_parser("record", help="Record a meeting with live insights")
    record.add_argument("--device", help="Input device id or name substring")
    record.add_argument("--mode", choices=[m.value for m in MeetingMode], help="Insight persona")
    record.add_argument("--provider", choices=get_available_providers(), help="Insight provider")
    record.add_argument("--title", help="Meeting title used when saving")
    record.add_argument("--no-save", action="store_true", help="Do not save the meeting")
    record.set_defaults(func=cmd_record)

    meetings = subparsers.add_parser("meetings", help="List saved meetings")
    meetings.set_defaults(func=cmd_meetings)

    show = subparsers.add_parser("show", help="Print a saved meeting")
    show.add_argument("id", type=int, help="Meeting id")
    show.add_argument("--markdown", action="store_true", help="Print as markdown")
    show.set_defaults(func=cmd_show)

    config = subparsers.add_parser("config", help="Show or change settings")
    config.add_argument("key", nargs="?", help="Setting such as insights.provider")
    config.add_argument("value", nargs="?", help="New value (saved to the config file)")
    config.set_defaults(func=cmd_config)

    return parser


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    ConfigManager.get_instance()
    apply_runtime_settings()

    try:
        return args.func(args)
    except Exception as e:
        log_exception(e, f"in '{args.command}' command")
        print(f"[!] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
