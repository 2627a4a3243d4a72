#!/usr/bin/env python3
"""
gator command line.

Commands manage users, feeds and follows, browse stored posts and run the
aggregation loop:

    gator register <name>         create a user and log in as them
    gator login <name>            switch the logged-in user
    gator reset                   delete every user (and their feeds/posts)
    gator users                   list users
    gator addfeed <name> <url>    add a feed and follow it
    gator feeds                   list feeds
    gator follow <url>            follow an existing feed
    gator following               list followed feeds
    gator unfollow <url>          stop following a feed
    gator browse [limit]          show recent posts from followed feeds
    gator agg <duration>          fetch feeds every <duration> (e.g. 30s, 5m, 1h)

The logged-in user lives in the session file; it is read once at startup and
handed to the command handlers inside a CommandContext.
"""

import argparse
import asyncio
import signal
import sys
from functools import wraps
from typing import Any, Dict, Optional

from config import Session, config, get_logger, load_session, save_session, OVERLAP_POLICIES
from errors import CommandError, ConfigurationError, DuplicateKeyError
from models import DatabaseQueue
from scheduler import FeedAggregator, FeedScheduler
from telemetry import init_telemetry, trace_span
from utils import format_timestamp, parse_duration, truncate_string, validate_url

# Module-specific logger
logger = get_logger("cli")
init_telemetry("gator-cli")

DESCRIPTION_PREVIEW_LENGTH = 200


class CommandContext:
    """Everything a command handler needs: the store and the session."""

    def __init__(self, db: DatabaseQueue, session: Session) -> None:
        self.db = db
        self.session = session


def require_user(handler):
    """Resolve the logged-in user and pass it to the handler."""

    @wraps(handler)
    async def wrapper(ctx: CommandContext, args: argparse.Namespace):
        name = ctx.session.current_user_name
        if not name:
            raise CommandError("No user is currently logged in")
        user = await ctx.db.execute('get_user_by_name', name=name)
        if not user:
            raise CommandError(f"User {name} not found")
        return await handler(ctx, args, user)

    return wrapper


def print_feed(feed: Dict[str, Any], user_name: str) -> None:
    print(f"* ID:            {feed['id']}")
    print(f"* Created:       {format_timestamp(feed['created_at'])}")
    print(f"* Updated:       {format_timestamp(feed['updated_at'])}")
    print(f"* Name:          {feed['name']}")
    print(f"* URL:           {feed['url']}")
    print(f"* User:          {user_name}")


async def handle_register(ctx: CommandContext, args: argparse.Namespace) -> None:
    try:
        user = await ctx.db.execute('create_user', name=args.name)
    except DuplicateKeyError:
        raise CommandError(f"User {args.name} already exists")
    ctx.session.current_user_name = user['name']
    save_session(ctx.session)
    print("User created successfully:")
    print(f"* ID:      {user['id']}")
    print(f"* Name:    {user['name']}")
    print(f"* Created: {format_timestamp(user['created_at'])}")


async def handle_login(ctx: CommandContext, args: argparse.Namespace) -> None:
    user = await ctx.db.execute('get_user_by_name', name=args.name)
    if not user:
        raise CommandError(f"User {args.name} not found")
    ctx.session.current_user_name = user['name']
    save_session(ctx.session)
    print(f"User has been set to {user['name']}")


async def handle_reset(ctx: CommandContext, args: argparse.Namespace) -> None:
    deleted = await ctx.db.execute('delete_all_users')
    logger.debug(f"Deleted {deleted} users")
    print("Database reset successfully")


async def handle_users(ctx: CommandContext, args: argparse.Namespace) -> None:
    current = ctx.session.current_user_name
    for user in await ctx.db.execute('list_users'):
        suffix = " (current)" if current and user['name'] == current else ""
        print(f"* {user['name']}{suffix}")


@require_user
async def handle_addfeed(ctx: CommandContext, args: argparse.Namespace, user: Dict[str, Any]) -> None:
    if not validate_url(args.url):
        raise CommandError(f"Invalid feed URL: {args.url}")
    try:
        feed = await ctx.db.execute('create_feed', name=args.name, url=args.url, user_id=user['id'])
    except DuplicateKeyError:
        raise CommandError(f"Feed with URL {args.url} already exists")
    print_feed(feed, user['name'])

    follow = await ctx.db.execute('create_feed_follow', user_id=user['id'], feed_id=feed['id'])
    print(f"{follow['user_name']} is now following {follow['feed_name']}")


async def handle_feeds(ctx: CommandContext, args: argparse.Namespace) -> None:
    for feed in await ctx.db.execute('list_feeds'):
        print(f"* Name: {feed['name']}")
        print(f"* URL: {feed['url']}")
        print(f"* User: {feed['user_name']}")


@require_user
async def handle_follow(ctx: CommandContext, args: argparse.Namespace, user: Dict[str, Any]) -> None:
    feed = await ctx.db.execute('get_feed_by_url', url=args.url)
    if not feed:
        raise CommandError(f"Feed with URL {args.url} not found")
    try:
        follow = await ctx.db.execute('create_feed_follow', user_id=user['id'], feed_id=feed['id'])
    except DuplicateKeyError:
        raise CommandError(f"{user['name']} already follows {feed['name']}")
    print(f"{follow['user_name']} is now following {follow['feed_name']}")


@require_user
async def handle_following(ctx: CommandContext, args: argparse.Namespace, user: Dict[str, Any]) -> None:
    for follow in await ctx.db.execute('get_feed_follows_for_user', user_id=user['id']):
        print(f"* {follow['feed_name']}")


@require_user
async def handle_unfollow(ctx: CommandContext, args: argparse.Namespace, user: Dict[str, Any]) -> None:
    removed = await ctx.db.execute('delete_feed_follow', user_id=user['id'], url=args.url)
    if not removed:
        raise CommandError(f"{user['name']} does not follow a feed with URL {args.url}")
    print(f"Unfollowed feed with URL: {args.url}")


@require_user
async def handle_browse(ctx: CommandContext, args: argparse.Namespace, user: Dict[str, Any]) -> None:
    limit = args.limit or config.BROWSE_DEFAULT_LIMIT
    posts = await ctx.db.execute('get_posts_for_user', user_id=user['id'], limit=limit)

    print(f"Found {len(posts)} posts:")
    print()
    for post in posts:
        print(f"Title: {post['title']}")
        print(f"URL: {post['url']}")
        if post['description']:
            print(f"Description: {truncate_string(post['description'], DESCRIPTION_PREVIEW_LENGTH)}")
        if post['published_at'] is not None:
            print(f"Published: {format_timestamp(post['published_at'])}")
        print(f"Feed: {post['feed_name']}")
        print()


@trace_span("cli.agg", tracer_name="cli")
async def handle_agg(ctx: CommandContext, args: argparse.Namespace) -> None:
    """Run the aggregation loop until SIGINT/SIGTERM."""
    logger.debug(f"Configuration: {config.get_config_summary()}")
    aggregator = FeedAggregator(ctx.db)
    scheduler = FeedScheduler(aggregator.scrape_next_feed, overlap_policy=args.overlap)

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.request_stop)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # add_signal_handler is unavailable on some platforms/threads
            logger.debug(f"Cannot install handler for {sig.name}")

    try:
        await scheduler.start(args.interval_ms)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await aggregator.close()


COMMANDS = {
    'register': handle_register,
    'login': handle_login,
    'reset': handle_reset,
    'users': handle_users,
    'addfeed': handle_addfeed,
    'feeds': handle_feeds,
    'follow': handle_follow,
    'following': handle_following,
    'unfollow': handle_unfollow,
    'browse': handle_browse,
    'agg': handle_agg,
}


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError("limit must be a positive number")
    if parsed <= 0:
        raise argparse.ArgumentTypeError("limit must be a positive number")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='gator', description='Personal feed aggregator')
    sub = parser.add_subparsers(dest='command', metavar='command')
    sub.required = True

    p = sub.add_parser('register', help='Create a user and log in')
    p.add_argument('name')
    p = sub.add_parser('login', help='Log in as an existing user')
    p.add_argument('name')
    sub.add_parser('reset', help='Delete all users, feeds, follows and posts')
    sub.add_parser('users', help='List users')
    p = sub.add_parser('addfeed', help='Add a feed and follow it')
    p.add_argument('name')
    p.add_argument('url')
    sub.add_parser('feeds', help='List feeds')
    p = sub.add_parser('follow', help='Follow an existing feed')
    p.add_argument('url')
    sub.add_parser('following', help='List followed feeds')
    p = sub.add_parser('unfollow', help='Stop following a feed')
    p.add_argument('url')
    p = sub.add_parser('browse', help='Show recent posts from followed feeds')
    p.add_argument('limit', nargs='?', type=_positive_int, default=None)
    p = sub.add_parser('agg', help='Fetch feeds periodically until interrupted')
    p.add_argument('duration', help='Time between requests: <number><ms|s|m|h>')
    p.add_argument('--overlap', choices=OVERLAP_POLICIES, default=None,
                   help='What to do when a tick fires while the previous one is still running')
    return parser


async def dispatch(args: argparse.Namespace, session: Session, db_path: Optional[str] = None) -> None:
    """Open the store, run the selected handler and close the store."""
    db = DatabaseQueue(db_path or config.DATABASE_PATH)
    await db.start()
    try:
        await COMMANDS[args.command](CommandContext(db, session), args)
    finally:
        await db.stop()


def main(argv=None) -> int:
    """Main entry point. Returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == 'agg':
            # Validate before touching the database or scheduling anything
            args.interval_ms = parse_duration(args.duration)
            if args.interval_ms <= 0:
                raise ConfigurationError(f"Interval must be greater than zero: {args.duration}")
        session = load_session()
        asyncio.run(dispatch(args, session))
    except (CommandError, ConfigurationError) as e:
        print(str(e), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
