from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from datetime import timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import Settings, load_settings
from .download.retention import apply_retention
from .logging_config import setup_logging
from .models import progress_view
from .service import Service, build_service
from .utils import ZERO_TIME


def _settings(args: argparse.Namespace) -> Settings:
    overrides: Dict[str, Any] = {}
    if args.db:
        overrides["db_path"] = str(args.db)
    if args.log_level:
        overrides["log_level"] = args.log_level
    settings = load_settings(args.config, overrides=overrides)
    setup_logging(settings.log_level, settings.log_file)
    return settings


def _service(args: argparse.Namespace) -> Service:
    return build_service(_settings(args))


def _fmt_percent(value: Optional[float]) -> str:
    return f"{float(value or 0.0):5.1f}%"


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2))


def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    service = _service(args)
    app = service.create_app(run_workers=not args.no_workers)
    host = args.host or service.settings.api.host
    port = args.port or service.settings.api.port
    print(f"StreamVault API on http://{host}:{port}/api")
    uvicorn.run(app, host=host, port=port, log_level="warning")


def cmd_discover(args: argparse.Namespace) -> None:
    service = _service(args)
    if service.scheduler is None:
        print("Discovery is not configured (set twitch.channel, client_id and client_secret).", file=sys.stderr)
        raise SystemExit(2)
    inserted = service.scheduler.run_once()
    print(f"Queued {inserted} new VOD(s) for {service.scheduler.source.channel}")


def cmd_download(args: argparse.Namespace) -> None:
    service = _service(args)
    progress = service.downloader.run_once(args.vod)
    if progress is None:
        print("Nothing to download.")
        return
    print(f"vod {progress.vod_id}: {progress.state} {_fmt_percent(progress.percent)}")
    if progress.last_error:
        print(f"  last error: {progress.last_error}")


def cmd_upload(args: argparse.Namespace) -> None:
    service = _service(args)
    progress = service.uploader.run_once(args.vod)
    if progress is None:
        print("Nothing to upload.")
        return
    vod = service.vods.get_vod(progress.vod_id)
    print(f"vod {progress.vod_id}: {progress.state} {_fmt_percent(progress.upload_percent)}")
    if vod.published_url:
        print(f"  published: {vod.published_url}")
    if progress.last_error:
        print(f"  last error: {progress.last_error}")


def cmd_correlate(args: argparse.Namespace) -> None:
    service = _service(args)
    result = service.correlator.correlate(args.vod)
    print(
        f"vod {result.vod_id}: {result.updated} row(s) correlated, "
        f"{result.clamped} clamped, {result.bad_timestamps} bad timestamp(s)"
    )
    if result.origin_fallback:
        print("  no broadcast start recorded; earliest chat message used as origin")


def cmd_attach_chat(args: argparse.Namespace) -> None:
    service = _service(args)
    service.vods.get_vod(args.vod)
    data = json.loads(Path(args.chat).read_text(encoding="utf-8"))
    messages = data.get("messages", []) if isinstance(data, dict) else data
    if not isinstance(messages, list):
        print("Chat file must hold a list of messages.", file=sys.stderr)
        raise SystemExit(2)
    count = service.chat.insert_messages(args.vod, messages)
    print(f"Attached {count} chat message(s) to vod {args.vod}")


def cmd_status(args: argparse.Namespace) -> None:
    service = _service(args)
    if args.vod is not None:
        vod, progress = service.vods.get_status(args.vod)
        _print_json(progress_view(vod, progress))
        return
    rows = service.vods.list_vods(state=args.state, limit=args.limit)
    if not rows:
        print("No VODs.")
        return
    print(f"{'ID':>5}  {'Source':>12}  {'State':<11}  {'Down':>6}  {'Up':>6}  Title")
    for vod, progress in rows:
        print(
            f"{vod.id:>5}  {vod.source_vod_id:>12}  {progress.state:<11}  "
            f"{_fmt_percent(progress.percent):>6}  {_fmt_percent(progress.upload_percent):>6}  "
            f"{vod.title}{' [skip upload]' if vod.skip_upload else ''}"
        )


def cmd_requeue(args: argparse.Namespace) -> None:
    service = _service(args)
    try:
        progress = service.vods.requeue(args.vod)
    except ValueError as exc:
        print(f"Cannot requeue vod {args.vod}: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    print(f"vod {args.vod} requeued as {progress.state}")


def cmd_skip_upload(args: argparse.Namespace) -> None:
    service = _service(args)
    try:
        vod = service.vods.set_skip_upload(args.vod, not args.off)
    except KeyError as exc:
        print(f"Unknown vod {args.vod}", file=sys.stderr)
        raise SystemExit(1) from exc
    print(f"vod {vod.id} skip_upload={'on' if vod.skip_upload else 'off'}")


def cmd_retention(args: argparse.Namespace) -> None:
    service = _service(args)
    policy = service.settings.retention
    if args.dry_run:
        policy = replace(policy, dry_run=True)
    if not policy.enabled:
        print("Retention is disabled (set retention.keep_days or retention.keep_count).")
        return
    result = apply_retention(service.vods, policy)
    verb = "Would delete" if result.dry_run else "Deleted"
    print(f"{verb} {result.deleted} file(s), {result.bytes_freed} bytes; {result.missing} already gone, {result.errors} error(s)")


def cmd_auth_youtube(args: argparse.Namespace) -> None:
    from google_auth_oauthlib.flow import InstalledAppFlow

    settings = _settings(args)
    oauth = settings.oauth
    secrets = args.client_secrets or oauth.client_secrets_file
    if not secrets:
        print("Pass --client-secrets or set oauth.client_secrets_file.", file=sys.stderr)
        raise SystemExit(2)

    scopes = args.scopes.split(",") if args.scopes else list(oauth.scopes)
    flow = InstalledAppFlow.from_client_secrets_file(str(secrets), scopes=scopes)
    creds = flow.run_local_server(port=args.redirect_port)
    expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else ZERO_TIME
    raw = {
        "token_uri": creds.token_uri,
        "client_id": creds.client_id,
        "client_secret": creds.client_secret,
        "scopes": list(creds.scopes or []),
    }
    service = build_service(settings)
    service.token_store.upsert_token(oauth.provider, creds.token, creds.refresh_token or "", expiry, raw)
    print(f"Stored {oauth.provider} token ({oauth.token_store} backend)")


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="sv", description="Archive Twitch VODs to YouTube and replay their chat.")
    parser.add_argument("--config", type=Path, default=None, help="YAML config file (default: $SV_CONFIG).")
    parser.add_argument("--db", type=Path, default=None, help="Override the SQLite database path.")
    parser.add_argument("--log-level", type=str, default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("serve", help="Run the API with the discovery, download and upload workers.")
    s.add_argument("--host", type=str, default=None)
    s.add_argument("--port", type=int, default=None)
    s.add_argument("--no-workers", action="store_true", help="Serve the API only.")
    s.set_defaults(func=cmd_serve)

    d = sub.add_parser("discover", help="Run one discovery pass.")
    d.set_defaults(func=cmd_discover)

    dl = sub.add_parser("download", help="Download the next queued VOD (or one VOD).")
    dl.add_argument("--vod", type=int, default=None)
    dl.set_defaults(func=cmd_download)

    up = sub.add_parser("upload", help="Upload the next downloaded VOD (or one VOD).")
    up.add_argument("--vod", type=int, default=None)
    up.set_defaults(func=cmd_upload)

    c = sub.add_parser("correlate", help="Compute chat offsets for a VOD.")
    c.add_argument("vod", type=int)
    c.set_defaults(func=cmd_correlate)

    ac = sub.add_parser("attach-chat", help="Import recorded chat messages (JSON) for a VOD.")
    ac.add_argument("vod", type=int)
    ac.add_argument("--chat", type=Path, required=True)
    ac.set_defaults(func=cmd_attach_chat)

    st = sub.add_parser("status", help="Show pipeline state.")
    st.add_argument("vod", type=int, nargs="?", default=None)
    st.add_argument("--state", type=str, default=None)
    st.add_argument("--limit", type=int, default=50)
    st.set_defaults(func=cmd_status)

    rq = sub.add_parser("requeue", help="Send a failed VOD back through the stage that failed.")
    rq.add_argument("vod", type=int)
    rq.set_defaults(func=cmd_requeue)

    sk = sub.add_parser("skip-upload", help="Keep a VOD out of the upload stage.")
    sk.add_argument("vod", type=int)
    sk.add_argument("--off", action="store_true", help="Allow uploading again.")
    sk.set_defaults(func=cmd_skip_upload)

    rt = sub.add_parser("retention", help="Delete local files of uploaded VODs outside the retention policy.")
    rt.add_argument("--dry-run", action="store_true", help="Only report what would be deleted.")
    rt.set_defaults(func=cmd_retention)

    auth = sub.add_parser("auth", help="Authorize upload accounts.")
    auth_sub = auth.add_subparsers(dest="auth_cmd", required=True)
    yt = auth_sub.add_parser("youtube", help="Authorize a YouTube channel via OAuth.")
    yt.add_argument("--client-secrets", type=Path, default=None)
    yt.add_argument("--redirect-port", type=int, default=0)
    yt.add_argument("--scopes", type=str, default=None)
    yt.set_defaults(func=cmd_auth_youtube)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
