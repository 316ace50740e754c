from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import os
import time
from pathlib import Path

import httpx

_CONCLUSION_TO_STATUS = {
    "success": "passed",
    "failure": "failed",
    "cancelled": "failed",
    "timed_out": "failed",
    "skipped": "passed",
}


def load_checks(path: Path | None) -> list[dict]:
    """Read check results written by earlier workflow steps.

    The file holds a JSON list of ``{"name", "status", "message"?, "duration"?}``.
    """

    if path is None or not path.exists():
        return []
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON list of checks")
    return [check for check in data if isinstance(check, dict) and check.get("name")]


def overall_status(conclusion: str, checks: list[dict]) -> str:
    if any(str(check.get("status", "")).lower() == "failed" for check in checks):
        return "failed"
    return _CONCLUSION_TO_STATUS.get(conclusion.lower(), conclusion.lower())


def build_report(args: argparse.Namespace, checks: list[dict]) -> dict:
    report = {
        "changeId": args.change_id,
        "status": overall_status(args.conclusion, checks),
        "checks": checks,
    }
    if args.run_id:
        report["runId"] = args.run_id
    if args.run_url:
        report["runUrl"] = args.run_url
    return report


def post_report(api_url: str, report: dict, secret: str | None, *, attempts: int = 3) -> dict:
    body = json.dumps(report, separators=(",", ":")).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if secret:
        digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        headers["X-Hub-Signature-256"] = f"sha256={digest}"
    url = f"{api_url.rstrip('/')}/v1/cicd/webhook"
    for attempt in range(1, attempts + 1):
        try:
            resp = httpx.post(url, content=body, headers=headers, timeout=30.0)
        except httpx.TransportError:
            if attempt == attempts:
                raise
            time.sleep(2 * attempt)
            continue
        if resp.status_code >= 500 and attempt < attempts:
            time.sleep(2 * attempt)
            continue
        resp.raise_for_status()
        return resp.json()
    raise RuntimeError("unreachable")


def main() -> None:
    parser = argparse.ArgumentParser(description="Report validation results for a staged change")
    parser.add_argument("--api-url", required=True)
    parser.add_argument("--change-id", required=True)
    parser.add_argument("--conclusion", required=True, help="Workflow job conclusion, e.g. success or failure.")
    parser.add_argument("--run-id", default=os.getenv("GITHUB_RUN_ID"))
    parser.add_argument("--run-url", default=None)
    parser.add_argument("--checks-file", default=None)
    args = parser.parse_args()

    if args.run_url is None and args.run_id and os.getenv("GITHUB_REPOSITORY"):
        server = os.getenv("GITHUB_SERVER_URL", "https://github.com")
        args.run_url = f"{server}/{os.environ['GITHUB_REPOSITORY']}/actions/runs/{args.run_id}"

    checks = load_checks(Path(args.checks_file) if args.checks_file else None)
    report = build_report(args, checks)
    response = post_report(args.api_url, report, os.getenv("CHANGEGATE_WEBHOOK_SECRET"))
    print(json.dumps(response, indent=2))
    if report["status"] == "failed":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
