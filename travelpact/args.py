"""Command-line argument parsing and configuration setup."""

import argparse
from pathlib import Path
from uuid import UUID
from . import config
from .config import Granularity, LocationAccuracy


def parse_args(argv=None):
    """Parse command-line arguments and return parsed args."""
    parser = argparse.ArgumentParser(description="TravelPact data tools: your waypoints, connections and pacts")
    parser.add_argument(
        "--url",
        default=config.supabase_url,
        help="Backend URL (default: $TRAVELPACT_SUPABASE_URL)",
    )
    parser.add_argument(
        "--key",
        default=config.supabase_key,
        help="Backend API key (default: $TRAVELPACT_SUPABASE_KEY)",
    )
    parser.add_argument(
        "--token",
        default=config.access_token,
        help="Access token of the signed-in user (default: $TRAVELPACT_ACCESS_TOKEN)",
    )
    parser.add_argument(
        "--cache",
        default=str(config.cache_path),
        help=f"Local cache file (default: {config.cache_path})",
    )
    parser.add_argument(
        "--accuracy",
        choices=[a.value for a in LocationAccuracy],
        default=config.location_accuracy.value,
        help="How precisely your known location is shared (default: city)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log what the tool is doing")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("status", help="Show session and profile status")
    commands.add_parser("waypoints", help="List your waypoints")
    commands.add_parser("connections", help="List your connections")
    commands.add_parser("pacts", help="List your pacts and pending invitations")

    shared = commands.add_parser("shared-routes", help="Show the routes another user shares with you")
    shared.add_argument("user_id", type=UUID, help="Account id of the other user")

    travel = commands.add_parser("travel-check", help="Compare a position with your known location")
    travel.add_argument("latitude", type=float)
    travel.add_argument("longitude", type=float)
    travel.add_argument(
        "--accept",
        metavar="NAME",
        help="If a trip is detected, make this position your known location under NAME",
    )

    photos = commands.add_parser("analyze-photos", help="Turn a folder of geotagged photos into waypoints")
    photos.add_argument("directory", type=str, help="Folder of JPEG photos (searched recursively)")
    photos.add_argument(
        "--granularity",
        choices=[g.value for g in Granularity],
        default=config.granularity.value,
        help="Group photos by this kind of place (default: city)",
    )
    photos.add_argument(
        "--sync",
        action="store_true",
        help="Save the waypoints found as a new route, uploading a few photos each",
    )
    return parser.parse_args(argv)


def setup_config(argv=None):
    """Parse arguments and apply them to config module."""
    args = parse_args(argv)

    if args.command == "analyze-photos" and not Path(args.directory).is_dir():
        print(f"Error: {args.directory} is not a directory.")
        exit(1)

    # Apply all args to config
    config.supabase_url = args.url
    config.supabase_key = args.key
    config.access_token = args.token
    config.cache_path = Path(args.cache)
    config.location_accuracy = LocationAccuracy(args.accuracy)
    if args.command == "analyze-photos":
        config.granularity = Granularity(args.granularity)

    return args
