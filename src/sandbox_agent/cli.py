import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from sandbox_agent.app_container import build_agent_service
from sandbox_agent.config import DEFAULT_ENV_PATH, Config, apply_env_defaults, load_config, load_env_file
from sandbox_agent.domain.runs import MAX_TURNS, MIN_TURNS
from sandbox_agent.services.agent_service import AgentService


def _configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_config(config: Config, env_path: Path) -> None:
    print(f"Env file: {env_path} ({'found' if env_path.exists() else 'missing'})")
    for key, value in config.masked().items():
        print(f"{key}: {value}")


async def _run_task(service: AgentService, task: str, max_turns: int, sandbox_path: Optional[str]) -> Dict[str, Any]:
    try:
        summary = await service.run_autonomous(task=task, max_turns=max_turns, sandbox_path=sandbox_path)
        # Let embedding-on-write finish before the process exits.
        await service.batch.wait_for_background()
    finally:
        await service.aclose()
    return summary.to_dict()


def main() -> None:
    parser = argparse.ArgumentParser(description="Sandboxed autonomous file agent")
    parser.add_argument("--env-file", default=str(DEFAULT_ENV_PATH), help="Path to a .env file (default: ./.env)")
    parser.add_argument("--print-config", action="store_true", help="Print resolved config with secrets masked")
    parser.add_argument("--task", help="Run one task in-process and print the run summary as JSON")
    parser.add_argument(
        "--max-turns",
        type=int,
        default=1,
        help=f"Turn budget for --task ({MIN_TURNS}..{MAX_TURNS}, default: 1)",
    )
    parser.add_argument("--sandbox-path", help="Sandbox root override for --task")
    parser.add_argument("--host", help="HTTP bind host (default: HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="HTTP bind port (default: PORT or 3000)")
    parser.add_argument("--log-level", default=None)

    args = parser.parse_args()
    env_path = Path(args.env_file).expanduser()
    apply_env_defaults(load_env_file(env_path))
    config = load_config(env_path)

    log_level = args.log_level or os.environ.get("LOG_LEVEL") or config.log_level
    _configure_logging(log_level)

    if args.print_config:
        _print_config(config, env_path)
        return

    agent_service = build_agent_service(config)

    if args.task is not None:
        try:
            result = asyncio.run(_run_task(agent_service, args.task, args.max_turns, args.sandbox_path))
        except ValueError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(2)
        print(json.dumps(result, ensure_ascii=False, indent=2, default=str))
        if result.get("status") == "failed":
            sys.exit(1)
        return

    from sandbox_agent.api.app import create_app
    import uvicorn

    app = create_app(agent_service)
    uvicorn.run(
        app,
        host=args.host or config.host,
        port=args.port or config.port,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    main()
