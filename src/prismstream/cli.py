import argparse
import getpass

from rich.console import Console
from rich.table import Table

import prismstream

from prismstream.api.client import JellyfinClient
from prismstream.app_logging import setup_logging
from prismstream.config import Settings, load_settings, save_settings
from prismstream.errors import PrismStreamError
from prismstream.hls.prefetch import PrefetchScheduler
from prismstream.hls.ranges import BufferRangeTracker
from prismstream.hls.store import SegmentStore
from prismstream.hls.variants import load_media_playlist
from prismstream.playback.profiles import PlaybackProfile
from prismstream.playback.quality import quality_by_id
from prismstream.session import require_session, save_session


def _client(settings: Settings) -> JellyfinClient:
    sess = require_session()
    return JellyfinClient(
        sess.server_url,
        access_token=sess.access_token,
        user_id=sess.user_id,
        device_name=settings.device_name,
        device_id=settings.device_id,
    )


def _cmd_login(args, settings: Settings, console: Console) -> int:
    server = (args.server or settings.server_url).rstrip("/")
    if not server:
        console.print("[red]--server is required on first login[/red]")
        return 2
    username = args.username or input("Username: ")
    password = getpass.getpass("Password: ")
    client = JellyfinClient(server, device_name=settings.device_name, device_id=settings.device_id)
    user_id, token = client.authenticate(username, password)
    save_session(server, user_id, token)
    settings.server_url = server
    save_settings(settings)
    console.print(f"Logged in to {server} as {username}")
    return 0


def _cmd_clear_cache(args, settings: Settings, console: Console) -> int:
    store = SegmentStore(settings.segment_cache_dir())
    removed = store.clear()
    console.print(f"Removed {removed} cached entries from {store.root}")
    return 0


def _cmd_stream_url(args, settings: Settings, console: Console) -> int:
    client = _client(settings)
    quality = quality_by_id(args.quality or settings.preferred_quality)
    url = client.stream_url(
        args.item,
        PlaybackProfile(args.profile),
        media_source_id=args.media_source,
        max_bitrate=quality.bitrate,
    )
    console.print(url, soft_wrap=True)
    return 0


def _cmd_prefetch(args, settings: Settings, console: Console) -> int:
    client = _client(settings)
    quality = quality_by_id(args.quality or settings.preferred_quality)
    profile = PlaybackProfile(args.profile)
    if not profile.is_segmented:
        console.print("[red]prefetch needs a segmented profile (high or compatible)[/red]")
        return 2

    url = client.stream_url(args.item, profile, media_source_id=args.media_source, max_bitrate=quality.bitrate)
    with console.status("fetching playlist..."):
        playlist = load_media_playlist(client.fetch_text, url, max_bitrate=quality.bitrate)
    console.print(f"{len(playlist)} segments, {playlist.total_duration:.1f}s")

    store = SegmentStore(settings.segment_cache_dir())
    store.purge_stale()
    scheduler = PrefetchScheduler(
        store,
        client.fetch_segment,
        lookahead=args.lookahead or settings.lookahead_seconds,
        cleanup=settings.cleanup_seconds,
        max_workers=settings.max_download_workers,
        tracker=BufferRangeTracker(store, tolerance=settings.merge_tolerance),
    )
    try:
        scheduler.set_playlist(playlist)
        tick = scheduler.on_playback_time(args.at)
        with console.status(f"downloading {len(tick.dispatched)} segments..."):
            finished = scheduler.wait_idle(timeout=args.timeout)
        ranges = scheduler.tracker.compute(playlist)

        table = Table(title=f"Buffered ranges for {args.item}")
        table.add_column("start (s)", justify="right")
        table.add_column("end (s)", justify="right")
        for start, end in ranges:
            table.add_row(f"{start:.2f}", f"{end:.2f}")
        console.print(table)
        if not finished:
            console.print("[yellow]timed out before every download finished[/yellow]")
    finally:
        scheduler.shutdown()
        if not args.keep:
            store.clear()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="prismstream")
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("--version", action="store_true")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("login", help="authenticate against a Jellyfin server")
    p.add_argument("--server")
    p.add_argument("--username")
    p.set_defaults(func=_cmd_login)

    p = sub.add_parser("clear-cache", help="delete every cached segment")
    p.set_defaults(func=_cmd_clear_cache)

    profiles = [prof.value for prof in PlaybackProfile]

    p = sub.add_parser("stream-url", help="print the request URL for an item")
    p.add_argument("item")
    p.add_argument("--profile", choices=profiles, default=PlaybackProfile.DIRECT.value)
    p.add_argument("--quality")
    p.add_argument("--media-source")
    p.set_defaults(func=_cmd_stream_url)

    p = sub.add_parser("prefetch", help="cache the segments ahead of a position")
    p.add_argument("item")
    p.add_argument("--at", type=float, default=0.0, help="playback position in seconds")
    p.add_argument("--profile", choices=profiles[1:], default=PlaybackProfile.HIGH.value)
    p.add_argument("--quality")
    p.add_argument("--media-source")
    p.add_argument("--lookahead", type=float)
    p.add_argument("--timeout", type=float, default=120.0)
    p.add_argument("--keep", action="store_true", help="leave the downloaded segments in the cache")
    p.set_defaults(func=_cmd_prefetch)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"prismstream {prismstream.__version__} ({prismstream.__file__})")
        return 0

    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    setup_logging(debug=args.debug)
    console = Console()
    settings = load_settings()
    try:
        return args.func(args, settings, console)
    except PrismStreamError as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
