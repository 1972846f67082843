"""Pulse Playtest launcher: run or batch sessions, replay from checkpoints, serve the inspection API."""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = os.getenv("PORT", "13015")


def _runner(config, store, feedback: bool):
    from pulse_playtest.config import build_llm
    from pulse_playtest.session.runner import SessionRunner

    return SessionRunner(
        build_llm(config),
        store,
        classifier_models=config["classifier_models"],
        auxiliary_models=config["auxiliary_models"],
        attempts_per_model=config["retries_per_model"],
        feedback=feedback,
    )


def _report(result, output: Path | None) -> int:
    print(f"{result.session_id}: {result.outcome} at turn {result.final_turn}"
          f" ({len(result.pulses)} pulses, ${result.cost.total.cost:.4f})")
    if result.error:
        print(f"  error: {result.error}")
    if result.feedback:
        print(f"  narrator {result.feedback.narrator_score:.1f}/10, pacing {result.feedback.pacing_verdict}")
    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(result.model_dump_json(indent=2))
        print(f"  result written to {output}")
    return 1 if result.outcome == "failed" else 0


def cmd_run(args, config, store) -> int:
    from pulse_playtest.config import load_story, session_config

    story = load_story(args.story)
    session = session_config(
        config, story,
        narrator_model=args.narrator, max_turns=args.max_turns, seed=args.seed,
    )
    archetypes = args.archetypes.split(",") if args.archetypes else None
    runner = _runner(config, store, feedback=not args.no_feedback)
    result = asyncio.run(runner.run(session, archetypes=archetypes, group_size=args.group_size))
    return _report(result, args.output)


def cmd_batch(args, config, store) -> int:
    from pulse_playtest.config import load_story, session_config
    from pulse_playtest.session.batch import build_report, run_batch

    story = load_story(args.story)
    narrators = args.narrators.split(",") if args.narrators else [None]
    configs = [
        session_config(
            config, story,
            narrator_model=narrator, max_turns=args.max_turns,
            seed=args.seed + i if args.seed is not None else None,
        )
        for narrator in narrators
        for i in range(args.sessions)
    ]
    archetypes = args.archetypes.split(",") if args.archetypes else None
    runner = _runner(config, store, feedback=not args.no_feedback)
    results = asyncio.run(run_batch(runner, configs, args.max_parallel, archetypes, args.group_size))
    report = build_report(results)

    for model, summary in report.by_narrator.items():
        print(f"{model}: {summary.completed} completed, {summary.timeout} timeout, {summary.failed} failed"
              f" of {summary.total}; avg {summary.avg_turns:.1f} turns, ${summary.avg_cost:.4f}")
    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(report.model_dump_json(indent=2))
        print(f"  report written to {args.output}")
    return 1 if report.summary.failed else 0


def cmd_replay(args, config, store) -> int:
    from pulse_playtest.storage import ReplayOverrides

    checkpoint = (
        store.load(args.session, args.turn) if args.turn is not None
        else store.load_latest(args.session)
    )
    overrides = ReplayOverrides(
        narrator_model=args.narrator,
        temperature=args.temperature,
        max_turns=args.max_turns,
        story_guide=args.guide.read_text(encoding="utf-8") if args.guide else None,
    )
    new_id, branched = store.resume(checkpoint, overrides)
    print(f"Branched {new_id} from {branched.lineage.parent}: {branched.lineage.branch_reason}")
    runner = _runner(config, store, feedback=not args.no_feedback)
    result = asyncio.run(runner.resume(branched))
    return _report(result, args.output)


def cmd_serve(args, config, store) -> int:
    import uvicorn

    os.environ["DATA_DIR"] = str(args.data_dir or Path(config["data_dir"]))
    uvicorn.run("pulse_playtest.app:create_app", factory=True, host=HOST, port=int(PORT), reload=args.reload)
    return 0


def main():
    parser = argparse.ArgumentParser(description="Pulse Playtest launcher")
    parser.add_argument("--config", type=Path, default=ROOT / "config.json",
                        help="Harness config file (default: ./config.json)")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Checkpoint storage directory (default: data_dir from config)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Play a new session")
    run.add_argument("story", type=Path, help="Story file (.json or .md)")
    run.add_argument("--archetypes", help="Comma-separated archetype ids (default: random 2-5)")
    run.add_argument("--group-size", type=int, default=None)
    run.add_argument("--narrator", help="Narrator model id")
    run.add_argument("--max-turns", type=int, default=None)
    run.add_argument("--seed", type=int, default=None)
    run.add_argument("--no-feedback", action="store_true", help="Skip post-session interviews")
    run.add_argument("--output", type=Path, default=None, help="Write the SessionResult JSON here")

    batch = sub.add_parser("batch", help="Play many sessions in parallel and compare narrators")
    batch.add_argument("story", type=Path, help="Story file (.json or .md)")
    batch.add_argument("--sessions", type=int, default=5, help="Sessions per narrator model")
    batch.add_argument("--narrators", help="Comma-separated narrator model ids (default: configured narrator)")
    batch.add_argument("--max-parallel", type=int, default=3)
    batch.add_argument("--archetypes", help="Comma-separated archetype ids (default: random 2-5)")
    batch.add_argument("--group-size", type=int, default=None)
    batch.add_argument("--max-turns", type=int, default=None)
    batch.add_argument("--seed", type=int, default=None, help="Seed of the first session; later ones count up")
    batch.add_argument("--no-feedback", action="store_true")
    batch.add_argument("--output", type=Path, default=None, help="Write the batch report JSON here")

    replay = sub.add_parser("replay", help="Branch from a checkpoint and play on")
    replay.add_argument("session", help="Session id")
    replay.add_argument("--turn", type=int, default=None, help="Checkpoint turn (default: latest)")
    replay.add_argument("--narrator", help="Narrator model override")
    replay.add_argument("--temperature", type=float, default=None)
    replay.add_argument("--max-turns", type=int, default=None)
    replay.add_argument("--guide", type=Path, default=None, help="Replacement story guide file")
    replay.add_argument("--no-feedback", action="store_true")
    replay.add_argument("--output", type=Path, default=None)

    serve = sub.add_parser("serve", help="Serve the checkpoint inspection API")
    serve.add_argument("--reload", action="store_true")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    from pulse_playtest.config import get_config
    from pulse_playtest.errors import CheckpointError
    from pulse_playtest.storage import CheckpointStore, FileBlobStore

    config = get_config(args.config)
    store = CheckpointStore(FileBlobStore(args.data_dir or Path(config["data_dir"])))
    commands = {"run": cmd_run, "batch": cmd_batch, "replay": cmd_replay, "serve": cmd_serve}
    try:
        sys.exit(commands[args.command](args, config, store))
    except (CheckpointError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
