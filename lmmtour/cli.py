"""
Command-line interface for LMMTour.

Usage:
    lmmtour list
    lmmtour show LESSON [--seed N]
    lmmtour render -o PATH [--lessons a,b] [--seed N] [--format html|text]
                   [--no-figures] [--progress print|tqdm|none]
"""

import argparse
import sys
from typing import List, Optional

from .core.lessons import LESSONS, run_lesson
from .report import REPORT_FORMATS, render_text


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lmmtour",
        description="A guided tour of linear and mixed models by simulation",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List the lessons of the tour")

    show = subparsers.add_parser("show", help="Print one lesson as text")
    show.add_argument("lesson", help="Lesson key (see 'lmmtour list')")
    show.add_argument("--seed", type=int, default=2137, help="Random seed (default: 2137)")

    render = subparsers.add_parser("render", help="Render the tour to a file")
    render.add_argument("-o", "--output", required=True, help="Output file path")
    render.add_argument("--lessons", default=None, help="Comma-separated lesson keys (default: all)")
    render.add_argument("--seed", type=int, default=2137, help="Random seed (default: 2137)")
    render.add_argument("--format", choices=REPORT_FORMATS, default="html", help="Output format (default: html)")
    render.add_argument("--no-figures", action="store_true", help="Skip figures")
    render.add_argument(
        "--progress",
        choices=["print", "tqdm", "none"],
        default="print",
        help="Progress reporting (default: print)",
    )
    return parser


def _cmd_list(args) -> None:
    width = max(len(key) for key in LESSONS)
    for key, lesson in LESSONS.items():
        print(f"{key:<{width}}  {lesson.title}")


def _cmd_show(args) -> None:
    import matplotlib

    matplotlib.use("Agg")
    result = run_lesson(args.lesson, seed=args.seed, figures=False)
    print(render_text([result], title=result.title))


def _cmd_render(args) -> None:
    import matplotlib

    matplotlib.use("Agg")
    from .tour import Tour

    tour = Tour(seed=args.seed, verbose=False)
    if args.lessons:
        tour.set_lessons(args.lessons)
    tour.set_figures(not args.no_figures).set_progress(args.progress)
    tour.run()
    written = tour.render(args.output, fmt=args.format)
    print(f"Report written to {written}")


_COMMANDS = {"list": _cmd_list, "show": _cmd_show, "render": _cmd_render}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        _COMMANDS[args.command](args)
    except (ValueError, ImportError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
