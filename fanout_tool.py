"""
Seed + fan-out command line tool
================================

Runs the same operations as the HTTP service from a terminal. Jobs are kept
in a SQLite file by default (--jobs-db) so `progress`, `cancel` and `retry`
work across invocations.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import textwrap
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from config import Settings
from creative_resolver import CreativeResolver
from errors import JobConflictError, JobNotFoundError, RemoteApiError, RemoteUnavailableError
from fanout import FanOutOrchestrator, normalize_custom_budgets
from graph_client import GraphClient
from media_store import prepare_image, prepare_video
from progress import ProgressTracker
from seed_builder import SeedCampaignBuilder, SeedMedia, SeedRequest
from state_store import build_job_store
from token_store import CredentialError, build_credential_provider


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def _parse_budgets(raw: Optional[str]) -> Optional[List[int]]:
    if not raw:
        return None
    return [int(x) for x in raw.split(",") if x.strip()]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="fanout_tool.py",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=textwrap.dedent(
            """
            Seed + fan-out tool

            Examples:
              # 1) Build the seed campaign / ad set / ad and wait for its post id
              python fanout_tool.py seed --plan seed.json --image creative.png --resolve-post-id

              # 2) Look up (or verify) the post id by hand
              python fanout_tool.py post-id --ad-id <AD_ID>
              python fanout_tool.py verify-post --post-id <PAGE_ID>_<POST_ID>

              # 3) Fan out 49 copies at $1.00/day each
              python fanout_tool.py duplicate --campaign-id <ID> --post-id <POST_ID> --count 49

              # 3b) Or make 3 new campaigns from the source, 49 copies in each
              python fanout_tool.py multiply --campaign-id <ID> --post-id <POST_ID> --copies 3

              # 4) Inspect, cancel or retry a job
              python fanout_tool.py progress --job-id <JOB_ID>
              python fanout_tool.py cancel --job-id <JOB_ID>
              python fanout_tool.py retry --job-id <JOB_ID>
            """
        ),
    )

    p.add_argument("--env", default=".env", help="Path to .env file (default: .env).")
    p.add_argument("--jobs-db", default=".fanout_jobs.db", help="SQLite job store path (default: .fanout_jobs.db).")
    p.add_argument("--user-id", default=None, help="Caller id for CREDENTIAL_SOURCE=db.")
    p.add_argument("-v", "--verbose", action="store_true")

    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("seed", help="Create the seed campaign, ad set and ad.")
    sp.add_argument("--plan", required=True, help="SeedRequest JSON file.")
    sp.add_argument("--image", help="Local image to upload.")
    sp.add_argument("--video", help="Local video to upload.")
    sp.add_argument("--card-image", action="append", default=[], help="Carousel card image (repeat in card order).")
    sp.add_argument("--resolve-post-id", action="store_true")

    sp = sub.add_parser("post-id", help="Resolve the post id behind an ad.")
    sp.add_argument("--ad-id", required=True)
    sp.add_argument("--no-wait", action="store_true", help="Single attempt, no retries.")

    sp = sub.add_parser("verify-post", help="Check that a post id exists.")
    sp.add_argument("--post-id", required=True)

    sp = sub.add_parser("duplicate", help="Fan a post out into sibling ad sets + ads.")
    sp.add_argument("--campaign-id", required=True)
    sp.add_argument("--post-id", required=True)
    sp.add_argument("--count", type=int, default=49)
    sp.add_argument("--budgets", help="Comma-separated per-sibling daily budgets in minor units.")
    sp.add_argument("--targeting-mode", choices=["default", "source"], default="default")

    sp = sub.add_parser("multiply", help="Copy the source campaign N times, each with its own sibling ad sets + ads.")
    sp.add_argument("--campaign-id", required=True)
    sp.add_argument("--post-id", required=True)
    sp.add_argument("--copies", type=int, default=1)
    sp.add_argument("--count", type=int, default=49, help="Ad set + ad copies per new campaign.")
    sp.add_argument("--budgets", help="Comma-separated per-sibling daily budgets in minor units.")
    sp.add_argument("--targeting-mode", choices=["default", "source"], default="default")

    sp = sub.add_parser("progress", help="Show a job snapshot.")
    sp.add_argument("--job-id", required=True)

    sp = sub.add_parser("cancel", help="Stop submitting further batches for a running job.")
    sp.add_argument("--job-id", required=True)

    sp = sub.add_parser("retry", help="Re-run the failed indices of a partial/failed job.")
    sp.add_argument("--job-id", required=True)

    sp = sub.add_parser("jobs", help="List recent jobs.")
    sp.add_argument("--status")
    sp.add_argument("--limit", type=int, default=20)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    env_path = Path(args.env)
    if env_path.exists():
        load_dotenv(env_path, override=False)

    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"[CONFIG ERROR] {e}", file=sys.stderr)
        return 2

    source = settings.job_store_source if settings.job_store_source != "memory" else "sqlite"
    store = build_job_store(args.jobs_db, source=source, database_url=settings.database_url or "")
    tracker = ProgressTracker(store)

    try:
        if args.cmd == "progress":
            _print(tracker.snapshot(args.job_id))
            return 0

        if args.cmd == "cancel":
            tracker.request_cancel(args.job_id)
            _print(tracker.snapshot(args.job_id))
            return 0

        if args.cmd == "jobs":
            _print([
                {"job_id": j.job_id, "status": j.status.value, "succeeded": j.success_count, "failed": j.error_count}
                for j in store.list_jobs(status=args.status, limit=args.limit)
            ])
            return 0

        user_id = args.user_id
        if args.cmd == "retry":
            user_id = user_id or tracker.get_status(args.job_id).user_id
        try:
            credentials = build_credential_provider().get(user_id)
        except (CredentialError, ValueError) as e:
            print(f"[CONFIG ERROR] {e}", file=sys.stderr)
            return 2

        client = GraphClient(credentials, settings)
        resolver = CreativeResolver(client, page_id=credentials.page_id, settings=settings)

        if args.cmd == "seed":
            request = SeedRequest.model_validate(json.loads(Path(args.plan).read_text()))
            media = SeedMedia(
                image=prepare_image(args.image) if args.image else None,
                video=prepare_video(args.video) if args.video else None,
                card_images=[prepare_image(c) for c in args.card_image],
            )
            request.resolve_post_id = request.resolve_post_id or args.resolve_post_id
            builder = SeedCampaignBuilder(client, credentials=credentials, settings=settings, resolver=resolver)
            _print(asyncio.run(builder.build(request, media)).model_dump())
            return 0

        if args.cmd == "post-id":
            if args.no_wait:
                resolution = asyncio.run(resolver.resolve(args.ad_id))
            else:
                resolution = asyncio.run(resolver.resolve_with_retry(args.ad_id))
            if resolution is None:
                _print({"ok": False, "requires_manual_input": True})
                return 1
            _print({"ok": True, "post_id": resolution.post_id, "source": resolution.source})
            return 0

        if args.cmd == "verify-post":
            post = asyncio.run(resolver.verify_post(args.post_id))
            _print({"ok": post is not None, "post": post})
            return 0 if post is not None else 1

        orchestrator = FanOutOrchestrator(client, tracker, credentials=credentials, settings=settings)

        if args.cmd in ("duplicate", "multiply"):
            if args.count > settings.max_count:
                print(f"[ERROR] --count must be <= {settings.max_count}", file=sys.stderr)
                return 2
            copies = args.copies if args.cmd == "multiply" else 1
            if not 1 <= copies <= settings.max_copies:
                print(f"[ERROR] --copies must be between 1 and {settings.max_copies}", file=sys.stderr)
                return 2
            budgets = _parse_budgets(args.budgets)
            # validate only; the job keeps the list as given
            normalize_custom_budgets(
                budgets,
                args.count,
                default_minor=settings.default_budget_minor,
                minimum_minor=settings.min_budget_minor,
            )
            snapshots = []
            for n in range(1, copies + 1):
                job = tracker.create(
                    source_campaign_id=args.campaign_id,
                    post_id=args.post_id,
                    requested_count=args.count,
                    custom_budgets=budgets,
                    targeting_mode=args.targeting_mode,
                    user_id=user_id,
                    mode="campaign_copy" if args.cmd == "multiply" else "siblings",
                    copy_number=n,
                )
                print(f"job_id: {job.job_id}", file=sys.stderr)
                job = asyncio.run(orchestrator.run(job.job_id))
                snapshots.append(tracker.snapshot(job.job_id))
            _print(snapshots[0] if args.cmd == "duplicate" else snapshots)
            return 0 if all(s["status"] == "completed" for s in snapshots) else 1

        if args.cmd == "retry":
            job = asyncio.run(orchestrator.run(args.job_id, retry=True))
            _print(tracker.snapshot(job.job_id))
            return 0 if job.status.value == "completed" else 1

        print(f"Unknown command: {args.cmd}", file=sys.stderr)
        return 2

    except RemoteApiError as e:
        print("\n[RemoteApiError]", e, file=sys.stderr)
        if e.error:
            print(json.dumps(e.error, indent=2), file=sys.stderr)
        return 1
    except (JobNotFoundError, JobConflictError, RemoteUnavailableError, ValueError) as e:
        print("\n[ERROR]", e, file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
