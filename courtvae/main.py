"""Command line interface for the courtvae learning loop."""

import argparse
import json
import logging
import sys

from .config import OrchestratorConfig
from .data.features import EVENT_LABELS
from .data.repository import JsonFileRepository
from .errors import CourtVAEError
from .models.game import GameContext
from .pipeline.orchestrator import OnlineLearningOrchestrator


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_orchestrator(args) -> OnlineLearningOrchestrator:
    repository = JsonFileRepository(args.data_dir)
    config = OrchestratorConfig(
        use_contrastive=getattr(args, "contrastive", False),
        random_seed=getattr(args, "seed", None),
        continue_on_error=not getattr(args, "stop_on_error", False),
    )
    return OnlineLearningOrchestrator.from_repository(repository, config=config)


def train(args):
    """Process pending games in the data directory."""
    orchestrator = build_orchestrator(args)

    def progress(current, total, result):
        status = "ok" if result.success else f"FAILED ({result.error})"
        print(f"[{current}/{total}] {result.game_id} {result.game_date}: {status}")

    try:
        run = orchestrator.start(
            max_games=args.max_games,
            start_from_game_id=args.start_from,
            on_progress=progress,
        )
    except CourtVAEError as exc:
        print(f"Error: {exc}")
        return 1

    summary = run["summary"]
    print(f"\n{'=' * 60}")
    print("TRAINING RUN")
    print(f"{'=' * 60}")
    print(f"Games processed: {summary['total_games_processed']}")
    print(f"Successful:      {summary['successful_games']}")
    print(f"Failed:          {summary['failed_games']}")
    print(f"Success rate:    {summary['success_rate']:.1%}")
    print(f"Avg time/game:   {summary['average_processing_time_ms']:.1f} ms")

    if args.report:
        report = {
            "run": run,
            "training": orchestrator.get_training_stats(),
            "performance": orchestrator.generate_performance_report(include_team_details=True),
            "validation": orchestrator.validation_history,
        }
        with open(args.report, "w") as f:
            json.dump(report, f, indent=2, default=str)
        print(f"\nReport written to {args.report}")

    return 0 if summary["failed_games"] == 0 else 2


def predict(args):
    """Print the predicted event distribution for one matchup."""
    orchestrator = build_orchestrator(args)
    context = GameContext(neutral_site=args.neutral, postseason=args.postseason)
    try:
        probs = orchestrator.predict_game(args.home, args.away, context)
    except CourtVAEError as exc:
        print(f"Error: {exc}")
        return 1

    print(f"{args.home} vs {args.away}")
    for label, p in zip(EVENT_LABELS, probs):
        print(f"  {label:<22} {p:.3f}")
    return 0


def status(args):
    """Summarize stored posteriors and pending games."""
    repository = JsonFileRepository(args.data_dir)
    pending = repository.next_unprocessed_games()
    team_ids = repository.list_team_ids()
    print(f"Games: {len(repository.games)} total, {len(pending)} pending")
    print(f"Teams with posteriors: {len(team_ids)}")
    if args.teams:
        for team_id in team_ids:
            posterior = repository.get_team_posterior(team_id)
            print(
                f"  {team_id:<20} games={posterior.games_processed:<4} "
                f"sigma={posterior.mean_sigma:.3f} confidence={posterior.confidence:.2f} "
                f"season={posterior.last_season or '-'}"
            )
    return 0


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Online variational learning of team playing styles"
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    train_parser = subparsers.add_parser("train", help="Process pending games")
    train_parser.add_argument("--data-dir", "-d", required=True, help="Directory holding games.json")
    train_parser.add_argument("--max-games", type=int, default=None, help="Maximum games to process")
    train_parser.add_argument("--start-from", default=None, help="Skip games dated before this game")
    train_parser.add_argument("--contrastive", action="store_true", help="Add the InfoNCE term to the encoder")
    train_parser.add_argument("--seed", type=int, default=None, help="Random seed")
    train_parser.add_argument("--stop-on-error", action="store_true", help="Abort the run on the first failed game")
    train_parser.add_argument("--report", default=None, help="Write a JSON run report here")

    predict_parser = subparsers.add_parser("predict", help="Predict event probabilities for a matchup")
    predict_parser.add_argument("--data-dir", "-d", required=True, help="Directory holding games.json")
    predict_parser.add_argument("--home", required=True, help="Team whose events are predicted")
    predict_parser.add_argument("--away", required=True, help="Opponent")
    predict_parser.add_argument("--neutral", action="store_true", help="Neutral-site game")
    predict_parser.add_argument("--postseason", action="store_true", help="Postseason game")

    status_parser = subparsers.add_parser("status", help="Show stored state")
    status_parser.add_argument("--data-dir", "-d", required=True, help="Directory holding games.json")
    status_parser.add_argument("--teams", action="store_true", help="List every team posterior")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "train":
        return train(args)
    elif args.command == "predict":
        return predict(args)
    elif args.command == "status":
        return status(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
