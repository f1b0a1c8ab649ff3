"""Companion core entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging

log = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Virtual companion decision and timing core")
    p.add_argument("--config", default=None, help="YAML config file path")
    p.add_argument("--http-port", type=int, default=None, help="HTTP server port")
    p.add_argument("--host", default=None, help="HTTP bind address")
    p.add_argument("--no-http", action="store_true", help="Run the core without the HTTP API")
    p.add_argument(
        "--rhythm-mode",
        default=None,
        choices=["steady", "pulse", "sequence", "adaptive", "sync"],
        help="Initial rhythm mode",
    )
    p.add_argument("--record", action="store_true", help="Record JSONL telemetry")
    p.add_argument("--log-level", default="INFO", help="Log level")
    return p.parse_args(argv)


async def async_main(args: argparse.Namespace) -> None:
    import uvicorn

    from companion.api.http_server import create_app
    from companion.api.ws_hub import WsHub
    from companion.config import load_config
    from companion.core.tick_loop import TickLoop
    from companion.io.recorder import Recorder

    cfg = load_config(args.config)

    # Apply CLI overrides
    if args.http_port is not None:
        cfg.network.http_port = args.http_port
    if args.host:
        cfg.network.host = args.host
    if args.rhythm_mode:
        cfg.rhythm.initial_mode = args.rhythm_mode
    if args.record:
        cfg.logging.record_jsonl = True

    ws_hub = WsHub()

    def _on_telemetry(sample: dict) -> None:
        ws_hub.broadcast_telemetry(sample)
        recorder.record_telemetry(sample)

    tick = TickLoop(cfg, on_telemetry=_on_telemetry)
    recorder = Recorder(
        directory=cfg.logging.record_dir,
        record_rate_hz=cfg.logging.record_rate_hz,
        max_file_mb=cfg.logging.record_max_mb,
        max_files=cfg.logging.record_roll_count,
        enabled=cfg.logging.record_jsonl,
        clock=tick.clock,
    )

    def _on_adaptation(decision) -> None:
        payload = decision.to_dict()
        ws_hub.broadcast_event("adaptation_applied", payload)
        recorder.record_event("adaptation_applied", payload)

    def _on_behavior(behavior) -> None:
        payload = behavior.to_dict()
        ws_hub.broadcast_event("behavior_started", payload)
        recorder.record_event("behavior_started", payload)

    tick.on("adaptation_applied", _on_adaptation)
    tick.on("behavior_started", _on_behavior)

    http_server = None
    try:
        tasks = [tick.run()]
        if not args.no_http:
            app = create_app(tick, ws_hub)
            http_config = uvicorn.Config(
                app,
                host=cfg.network.host,
                port=cfg.network.http_port,
                log_level="warning",
            )
            http_server = uvicorn.Server(http_config)
            tasks.append(http_server.serve())

        log.info(
            "companion running (rhythm=%s, adaptation=%s, http=%s)",
            cfg.rhythm.initial_mode,
            cfg.adaptation.enabled,
            "off" if args.no_http else f"{cfg.network.host}:{cfg.network.http_port}",
        )
        await asyncio.gather(*tasks)
    finally:
        log.info("shutting down...")
        tick.stop()
        if http_server:
            http_server.should_exit = True
        recorder.close()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-5s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        asyncio.run(async_main(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
