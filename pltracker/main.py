import argparse
import logging
import sys

from pltracker.assessments.messages import GET_DASHBOARD, REFRESH_REQUEST
from pltracker.assessments.views import (
    format_due,
    format_refresh_summary,
    get_pending_within,
    progress_label,
)
from pltracker.core.app import TrackerApp


def setup_basic_logging():
    """Setup basic stdout logging before config is loaded"""
    root_logger = logging.getLogger()
    if not root_logger.handlers:  # Only add handler if none exists
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
        ))
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.DEBUG)
        logging.debug("Basic logging initialized")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='PrairieLearn assessment tracker')
    parser.add_argument('--config',
                        help='Path to config file (default: ~/.pltracker/config.yaml)')
    sub = parser.add_subparsers(dest='command')

    sub.add_parser('serve', help='Run the API server and the periodic refresh')

    refresh = sub.add_parser('refresh', help='Refresh courses once and print the summary')
    refresh.add_argument('--origin', help='PrairieLearn origin, e.g. https://us.prairielearn.com')
    refresh.add_argument('--course', action='append', dest='courses', default=[],
                         help='Course instance id (repeatable)')

    dashboard = sub.add_parser('dashboard', help='Print upcoming assessments')
    dashboard.add_argument('--days', type=int,
                           help='Only unfinished assessments due within this many days')
    return parser


def print_dashboard(data, days=None) -> None:
    rows = get_pending_within(data, days=days) if days is not None else data.get("upcoming") or []
    meta = data.get("meta") or {}
    if meta.get("last_refresh_summary"):
        print(format_refresh_summary(meta["last_refresh_summary"]))
    if meta.get("last_error"):
        print(f"Last error: {meta['last_error']}")
    if not rows:
        print("No upcoming assessments.")
        return
    for row in rows:
        badge = f"[{row['badge']}] " if row.get("badge") else ""
        print(f"{format_due(row.get('due_at')):<20} {row.get('course_label')}: {badge}{row.get('title')} ({progress_label(row)})")
        if row.get("href"):
            print(f"{'':<20} {row['href']}")


def run_command(app: TrackerApp, args) -> int:
    if args.command == 'refresh':
        payload = {}
        if args.origin:
            payload["origin"] = args.origin
        if args.courses:
            payload["course_instance_ids"] = args.courses
        response = app.send({"type": REFRESH_REQUEST, "payload": payload})
        if not response.get("ok"):
            print(f"Refresh failed: {response.get('error')}", file=sys.stderr)
            return 1
        print(format_refresh_summary(response.get("refresh_summary")))
        return 0

    response = app.send({"type": GET_DASHBOARD})
    if not response.get("ok"):
        print(f"Could not load dashboard: {response.get('error')}", file=sys.stderr)
        return 1
    print_dashboard(response["data"], days=getattr(args, "days", None))
    return 0


def main(argv=None) -> int:
    setup_basic_logging()

    args = build_parser().parse_args(argv)
    app = TrackerApp(config_path=args.config)

    if args.command in (None, 'serve'):
        app.run()
        return 0

    try:
        return run_command(app, args)
    finally:
        app.close()


if __name__ == "__main__":
    sys.exit(main())
