# main.py
"""CLI entry point for scenecraft."""

from __future__ import annotations

import argparse

from orchestration.cli_runner import run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scenecraft",
        description="Constrained multi-turn scene generation against a local Ollama model.",
    )
    parser.add_argument("--log-level", default=None, help="Override SCENECRAFT_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Create a new story project")
    init.add_argument("--title", required=True)
    init.add_argument("--setting", required=True)
    init.add_argument("--premise", required=True)
    init.add_argument("--tone", required=True)
    init.add_argument(
        "--length", choices=["short", "medium", "long"], default="medium"
    )
    init.add_argument(
        "--cast", nargs="+", required=True, help="Character ids (2-6) from the roster"
    )
    init.add_argument("--outline", action="store_true", help="Enable outline mode")

    premise = sub.add_parser("premise", help="Suggest a premise for a cast")
    premise.add_argument("--setting", required=True)
    premise.add_argument("--tone", required=True)
    premise.add_argument("--cast", nargs="+", required=True)

    skeleton = sub.add_parser("skeleton", help="Generate a scene skeleton")
    skeleton.add_argument("project_id")
    skeleton.add_argument(
        "--force", action="store_true", help="Unlock and replace a locked skeleton"
    )
    skeleton.add_argument("--lock", action="store_true", help="Lock the new skeleton")

    beats = sub.add_parser("beats", help="Generate script beats")
    beats.add_argument("project_id")
    beats.add_argument("-n", "--count", type=int, default=1, help="Beats to request")
    beats.add_argument(
        "--scene",
        action="store_true",
        help="Generate --count beats one at a time, refreshing the summary between",
    )
    beats.add_argument(
        "--regenerate", type=int, default=None, metavar="INDEX", help="Replace one beat"
    )

    narrate = sub.add_parser("narrate", help="Render the script as prose")
    narrate.add_argument("project_id")
    narrate.add_argument("--revision", default=None, help="Revision instruction")
    narrate.add_argument("--export", default=None, metavar="PATH")

    show = sub.add_parser("show", help="Show a stored project")
    show.add_argument("project_id", nargs="?", default=None)

    sub.add_parser("models", help="List models available on the Ollama server")
    return parser


def main() -> None:
    """Parse command-line arguments and run the requested command."""
    args = build_parser().parse_args()
    raise SystemExit(run(args))


if __name__ == "__main__":
    main()
