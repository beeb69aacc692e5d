import asyncio
import logging
import sys
import time

from tqdm.asyncio import tqdm

from . import args as args_module
from .app import TravelPactApp
from .errors import ConfigurationError, TravelPactError
from .geo import Coordinate
from .photos import load_photos_from_dir
from .store import AnalysisProgress
from .timeutils import format_date_range


async def show_status(app: TravelPactApp, args) -> None:
    complete = await app.auth.check_auth_status()
    if not app.auth.is_authenticated:
        print("Not signed in. Set TRAVELPACT_ACCESS_TOKEN or pass --token.")
        return
    session = await app.backend.get_session()
    print(f"Signed in as {session.email or session.phone or session.user_id}")
    print(f"Profile: {'complete' if complete else 'onboarding not finished'}")
    location = app.location
    if location.known_location is not None:
        print(f"Known location: {location.known_location_name or 'unnamed'} "
              f"({location.known_location.latitude:.4f}, {location.known_location.longitude:.4f})")


async def list_waypoints(app: TravelPactApp, args) -> None:
    waypoints = await app.waypoints.load_waypoints()
    if app.waypoints.error_message:
        raise TravelPactError(app.waypoints.error_message)
    if not waypoints:
        print("No waypoints yet")
        return
    for wp in waypoints:
        when = ""
        if wp.arrival_time:
            when = format_date_range(wp.arrival_time, wp.departure_time or wp.arrival_time)
        print(f"{wp.sequence_order:4d}. {wp.name}  {when}")


async def list_connections(app: TravelPactApp, args) -> None:
    await app.connections.load_connections()
    if app.connections.error_message:
        raise TravelPactError(app.connections.error_message)
    visible = app.connections.visible_connections
    print(f"{len(visible)} connections")
    for c in visible:
        marker = "*" if c.has_account else " "
        print(f" {marker} {c.name:<30} {c.display_location_name or 'no location'}")


async def list_pacts(app: TravelPactApp, args) -> None:
    pacts = await app.pacts.load_my_pacts()
    if app.pacts.error_message:
        raise TravelPactError(app.pacts.error_message)
    invitations = await app.pacts.load_invitations()
    for p in pacts:
        live = " [live]" if p.pact.is_live else ""
        print(f"{p.pact.name}{live}: {p.member_count} members, {len(p.pending_members)} pending")
    if invitations:
        print(f"\n{len(invitations)} pending invitations")
        for inv in invitations:
            by = inv.invited_by.name if inv.invited_by else "someone"
            print(f"  {inv.pact.name} (from {by})")
    if not pacts and not invitations:
        print("No pacts yet")


async def shared_routes(app: TravelPactApp, args) -> None:
    routes = await app.contact_data.load_contact_routes(args.user_id)
    if app.contact_data.error_message:
        raise TravelPactError(app.contact_data.error_message)
    if not routes:
        print("No shared routes")
        return
    for route in routes:
        print(route.name)
        for wp in route.waypoints:
            when = ""
            if wp.arrival_time:
                when = format_date_range(wp.arrival_time, wp.departure_time or wp.arrival_time)
            print(f"  {wp.sequence_order:4d}. {wp.name}  {when}")


async def travel_check(app: TravelPactApp, args) -> None:
    location = app.location
    if location.known_location is None:
        print("No known location saved yet")
        if args.accept:
            await location.update_known_location(Coordinate(args.latitude, args.longitude), args.accept)
            print(f"Known location set to {args.accept}")
        return

    if not location.update_actual_location(Coordinate(args.latitude, args.longitude)):
        print(f"No trip detected ({location.travel_distance_km:.1f} km from {location.known_location_name or 'known location'})")
        return
    print(f"Looks like you traveled {location.travel_distance_km:.0f} km from {location.known_location_name or 'your known location'}")
    if args.accept:
        await location.accept_suggestion(args.accept)
        print(f"Known location updated to {args.accept}")


async def analyze_photos(app: TravelPactApp, args) -> None:
    start_time = time.time()
    print(f"Reading photos in {args.directory}...")
    photos = load_photos_from_dir(args.directory)
    print(f"Found {len(photos)} photos")

    progress_bar = tqdm(total=len(photos), desc="Analyzing", unit="photo", disable=False)

    def on_progress(event: AnalysisProgress) -> None:
        progress_bar.total = event.total
        progress_bar.n = event.current
        progress_bar.set_postfix_str(event.current_location or "", refresh=False)
        progress_bar.refresh()

    unsubscribe = app.store.subscribe(AnalysisProgress, on_progress)
    try:
        waypoints = await app.photos.analyze(photos)
    finally:
        unsubscribe()
        progress_bar.close()

    for i, wp in enumerate(waypoints, start=1):
        print(f"{i:4d}. {wp.location_name}  ({wp.photo_count} photos)")

    if args.sync:
        await app.auth.check_auth_status()
        if not app.auth.is_authenticated:
            raise TravelPactError("Sign in to sync waypoints")
        route_id = await app.photos.sync_to_database()
        print(f"Saved {app.photos.stats.waypoints_synced} waypoints to route {route_id}")

    app.photos.stats.print_summary(time.time() - start_time)


COMMANDS = {
    "status": show_status,
    "waypoints": list_waypoints,
    "connections": list_connections,
    "pacts": list_pacts,
    "shared-routes": shared_routes,
    "travel-check": travel_check,
    "analyze-photos": analyze_photos,
}


async def main(argv=None) -> int:
    args = args_module.setup_config(argv)
    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        app = TravelPactApp.from_config()
    except ConfigurationError as e:
        print(f"Error: {e.message}")
        return 1

    async with app:
        try:
            await COMMANDS[args.command](app, args)
        except TravelPactError as e:
            print(f"Error: {e.message}")
            return 1
    return 0


def run() -> None:
    """Console-script entry point."""
    sys.exit(asyncio.run(main()))
