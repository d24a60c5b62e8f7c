from __future__ import annotations

from dataclasses import asdict
from typing import Any, Mapping

from .collector import STATUS_COMPLETED, STATUS_FAILED, STATUS_STOPPED, RunCounts
from .config_schema import AppConfig
from .paginate import STOP_MAX_SCROLLS, STOP_STALLED


def build_run_report(
    *,
    status: str,
    mode: str,
    config: AppConfig,
    counts: RunCounts,
    stop_reason: str | None = None,
    last_error: str | None = None,
) -> dict[str, Any]:
    st = (status or "").strip() or "unknown"
    details: dict[str, Any] = {"mode": mode, **asdict(counts)}
    if stop_reason:
        details["stop_reason"] = stop_reason

    recommendations: list[str] = []
    summary = f"Collection ended with status={st}."

    if st == STATUS_COMPLETED:
        summary = (
            f"Collected {counts.attempted} posts: {counts.inserted} new, "
            f"{counts.skipped} already archived, {counts.failed} failed."
        )
        if stop_reason == STOP_MAX_SCROLLS and mode == "incremental" and counts.skipped == 0 and counts.inserted > 0:
            details["incremental_max_scrolls"] = int(config.pagination.incremental_max_scrolls)
            recommendations.append(
                "Every collected post was new; run a backfill to reach older likes."
            )
        if stop_reason == STOP_STALLED and counts.attempted == 0:
            recommendations.append(
                "The feed showed no posts; raise pagination.settle_ms if the page loads slowly."
            )
        if counts.media_failed:
            recommendations.append(
                "Some media failed to download; they are retried whenever their posts are "
                "collected again, or raise media.timeout_seconds."
            )
        if counts.threads_skipped:
            recommendations.append(
                "Some threads could not be verified; they are retried on the next run."
            )

    elif st == STATUS_STOPPED:
        summary = f"Collection was stopped early after {counts.attempted} posts ({counts.inserted} new)."
        recommendations = ["Re-run to continue; already archived posts are skipped."]

    elif st == STATUS_FAILED:
        err = (last_error or "").strip()
        details["last_error"] = err
        summary = f"Collection failed: {err or 'unknown error'}."
        lowered = err.casefold()
        if "login" in lowered:
            recommendations = [
                "Log in to the browser window that opens, then re-run.",
                "Raise browser.login_timeout_ms if you need more time to log in.",
            ]
        elif "navigationfailed" in lowered or "timeout" in lowered:
            recommendations = [
                "Check the network connection and re-run.",
                "Raise browser.navigation_timeout_ms or browser.selector_timeout_ms on slow connections.",
            ]
        elif "storageerror" in lowered:
            recommendations = [
                "Check free disk space and permissions under storage.data_root.",
                "Set storage.recreate_if_corrupt to rebuild a damaged archive.",
            ]
        else:
            recommendations = ["Inspect the run log for the failing stage and re-run."]

    return {
        "status": st,
        "summary": summary,
        "details": details,
        "recommendations": recommendations,
    }


def format_run_report(report: Mapping[str, Any]) -> str:
    status = str(report.get("status") or "").strip() or "unknown"
    summary = str(report.get("summary") or "").strip() or f"Collection ended ({status})."

    lines: list[str] = [summary]
    recs = report.get("recommendations")
    if isinstance(recs, list) and recs:
        lines.append("Recommendations:")
        for r in recs:
            t = str(r or "").strip()
            if t:
                lines.append(f"- {t}")

    return "\n".join(lines)
