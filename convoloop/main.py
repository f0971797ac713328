"""
convoloop Main
Command-line entry point: builds the turn machine from configuration and
drives it either from the terminal (Enter toggles, q quits) or through
the HTTP control API (--serve).
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .app.controls import ControlGate, control_state
from .clients.dialogue_client import HttpDialogueClient
from .config import ConfigValidationError, ConvoConfig
from .errors import ConvoError
from .pipeline.capture import Recorder
from .pipeline.playback import PlaybackController
from .pipeline.vad import VoiceActivityMonitor
from .voice.turn_router import TurnStateMachine
from .voice.turn_state import TurnSnapshot

logger = logging.getLogger("convoloop")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="convoloop",
        description="Hands-free voice conversation with a remote dialogue agent.",
    )
    parser.add_argument("--config", help="Path to a JSON config file")
    parser.add_argument("--base-url", help="Dialogue service base URL")
    parser.add_argument("--from-id", help="Identity of the human participant")
    parser.add_argument("--to-id", help="Identity of the agent participant")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override logging.level",
    )
    parser.add_argument("--no-barge-in", action="store_true", help="Do not listen while the reply plays")
    parser.add_argument("--serve", action="store_true", help="Run the HTTP control API instead of the terminal loop")
    parser.add_argument("--host", help="Control API host")
    parser.add_argument("--port", type=int, help="Control API port")
    return parser


def load_config(args: argparse.Namespace) -> ConvoConfig:
    """Config file + env overlays, then CLI flags on top."""
    cfg = ConvoConfig(args.config)
    cfg.override("dialogue", base_url=args.base_url)
    cfg.override("session", from_id=args.from_id, to_id=args.to_id)
    cfg.override("logging", level=args.log_level)
    cfg.override("server", host=args.host, port=args.port)
    if args.no_barge_in:
        cfg.override("turn", barge_in=False)
    return cfg


def build_machine(cfg: ConvoConfig) -> TurnStateMachine:
    """Wire real devices and the HTTP dialogue client into a turn machine."""
    # PortAudio is loaded on import; keep it out of module import time.
    from .pipeline.devices import SoundDeviceCapture, SoundDeviceOutput

    capture_cfg = cfg.capture_config()
    return TurnStateMachine(
        session=cfg.session(),
        capture_device=SoundDeviceCapture(capture_cfg),
        monitor=VoiceActivityMonitor(cfg.vad_config()),
        playback=PlaybackController(SoundDeviceOutput(cfg.output_device)),
        dialogue=HttpDialogueClient(cfg.dialogue_config()),
        recorder=Recorder(capture_cfg),
        config=cfg.turn_config(),
    )


def _print_snapshot(machine: TurnStateMachine):
    def _on_change(snapshot: TurnSnapshot) -> None:
        control = control_state(snapshot, machine.playback_active)
        suffix = f"  error={snapshot.last_error}" if snapshot.last_error else ""
        print(f"[{snapshot.state.value}] {control.label}{suffix}", flush=True)
    return _on_change


def _print_error(error: ConvoError) -> None:
    print(f"! {error.code}: {error.message}", file=sys.stderr, flush=True)


async def run_terminal(machine: TurnStateMachine, debounce_secs: float) -> None:
    """Enter toggles the control, q quits."""
    gate = ControlGate(machine, debounce_secs=debounce_secs)
    machine.subscribe(_print_snapshot(machine))
    machine.subscribe_errors(_print_error)

    async with machine:
        print("Press Enter to start/stop/interrupt, q then Enter to quit.", flush=True)
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line or line.strip().lower() in ("q", "quit", "exit"):
                break
            result = gate.press()
            if not result.accepted:
                print(f"({result.reason})", flush=True)


async def run_server(machine: TurnStateMachine, cfg: ConvoConfig) -> None:
    """Serve the control API on the current loop so the machine shares it."""
    import uvicorn

    from .server import create_app

    app = create_app(machine, ControlGate(machine, debounce_secs=cfg.debounce_secs))
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=cfg.server["host"],
            port=cfg.server["port"],
            log_level=cfg.log_level.lower(),
        )
    )
    await server.serve()


async def _amain(args: argparse.Namespace, cfg: ConvoConfig) -> None:
    machine = build_machine(cfg)
    try:
        if args.serve:
            await run_server(machine, cfg)
        else:
            await run_terminal(machine, cfg.debounce_secs)
    finally:
        await machine.dialogue.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = load_config(args)
    except ConfigValidationError as e:
        print(f"convoloop: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(level=getattr(logging, cfg.log_level), format=LOG_FORMAT)
    logger.info(
        "starting  session=%s  dialogue=%s  serve=%s",
        cfg.session().label, cfg.get("dialogue")["base_url"], args.serve,
    )
    try:
        asyncio.run(_amain(args, cfg))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
