#!/usr/bin/env python3
"""
notifications.py

Teams notifications for list maintenance runs.

Every finalized run produces exactly one summary card. When no webhook is
configured, or Teams rejects the card, the summary is printed to the console
instead so no run goes unreported.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from . import config
from .models import MaintenanceRun, RunStatus, ValidationReport

logger = logging.getLogger(__name__)


class NotificationLevel(Enum):
    """Notification severity levels"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


STATUS_LEVELS = {
    RunStatus.SUCCESS: NotificationLevel.INFO,
    RunStatus.PARTIAL_SUCCESS: NotificationLevel.WARNING,
    RunStatus.FAILED: NotificationLevel.ERROR,
}


class TeamsNotifier:
    """Teams MessageCard sender with console fallback"""

    def __init__(self, webhook_url: str = None, fallback_to_console: bool = True):
        self.webhook_url = config.TEAMS_WEBHOOK_URL if webhook_url is None else webhook_url
        self.fallback_to_console = fallback_to_console
        self.session_warnings: List[Dict[str, Any]] = []
        self.session_errors: List[Dict[str, Any]] = []
        self.sent_run_ids: List[str] = []

    def _track(self, bucket: List[Dict[str, Any]], message: str, details: Optional[Dict]):
        bucket.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "message": message,
            "details": details or {}
        })

    def add_warning(self, message: str, details: Optional[Dict] = None):
        """Track a warning-level issue"""
        self._track(self.session_warnings, message, details)
        logger.warning(f"📨 NOTIFICATION TRACKED: {message}")

    def add_error(self, message: str, details: Optional[Dict] = None):
        """Track an error-level issue"""
        self._track(self.session_errors, message, details)
        logger.error(f"📨 NOTIFICATION TRACKED: {message}")

    def clear_session(self):
        self.session_warnings = []
        self.session_errors = []

    # =========================================================================
    # 📊 RUN SUMMARY
    # =========================================================================

    def send_run_summary(self, run: MaintenanceRun) -> bool:
        """
        Send the single summary card for a finalized run.

        Tracked session warnings and errors ride along on the card and are
        cleared afterwards.
        """
        level = STATUS_LEVELS.get(run.status, NotificationLevel.ERROR)
        title = f"{_STATUS_ICONS.get(run.status, '❔')} List maintenance: {run.workflow.value} {run.status.value}"
        card = self.build_run_card(run, title, level)
        self.sent_run_ids.append(run.run_id)

        delivered = self._post(card, level)
        if not delivered and self.fallback_to_console:
            self._fallback_to_console(title, level, run)
        self.clear_session()
        return delivered

    def build_run_card(self, run: MaintenanceRun, title: str, level: NotificationLevel) -> Dict[str, Any]:
        counts = run.summary_counts()
        facts = [
            {"name": "Run", "value": run.run_id},
            {"name": "Trigger", "value": run.trigger or "-"},
            {"name": "Status", "value": run.status.value.upper()},
            {"name": "Suppressed", "value": str(counts["suppressed"])},
            {"name": "Rebalanced", "value": str(counts["rebalanced"])},
            {"name": "Rejected", "value": str(counts["rejected"])},
            {"name": "Failed", "value": str(counts["failed"])},
            {"name": "Deferred", "value": str(counts["deferred"])},
            {"name": "Orphaned", "value": str(counts["orphaned"])},
            {"name": "Used Fallback", "value": "Yes" if run.used_fallback else "No"},
        ]
        if run.abort_reason:
            facts.append({"name": "Abort Reason", "value": run.abort_reason})

        sections = [{
            "activityTitle": title,
            "activitySubtitle": f"Finished {_format_time(run.finished_at)}",
            "facts": facts,
        }]

        if run.before_state or run.after_state:
            lines = []
            for name in ("master", "campaign_1", "campaign_2", "campaign_3", "suppression"):
                before = run.before_state.get(name, "-")
                after = run.after_state.get(name, "-")
                lines.append(f"**{name}:** {before} → {after}")
            if run.deviation_before is not None:
                after_dev = f"{run.deviation_after:.1f}%" if run.deviation_after is not None else "-"
                lines.append(f"**deviation:** {run.deviation_before:.1f}% → {after_dev}")
            if run.rebalance_triggered:
                lines.append("⚖️ Rebalancing was triggered")
            sections.append({"activityTitle": "📋 List Sizes", "text": "\n\n".join(lines)})

        if self.session_errors or self.session_warnings or run.notes:
            issue_text = ""
            for i, item in enumerate((self.session_errors + self.session_warnings)[-5:], 1):
                issue_text += f"**{i}.** {item['message']}\n"
                if item['details']:
                    issue_text += f"   *Details:* {json.dumps(item['details'], default=str)}\n"
            for note in run.notes[-5:]:
                issue_text += f"• {note}\n"
            sections.append({
                "activityTitle": "⚠️ Issues",
                "text": issue_text[:1000] + ("..." if len(issue_text) > 1000 else "")
            })

        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": self._get_theme_color(level),
            "summary": title,
            "sections": sections,
        }

    def send_pre_send_report(self, report: ValidationReport) -> bool:
        """Only blocked or warning reports are worth a card"""
        if report.is_ready:
            return True
        level = NotificationLevel.ERROR if report.status == "blocked" else NotificationLevel.WARNING
        title = f"🛫 Pre-send check {report.status.upper()}: {report.list_handle.value}"
        card = {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": self._get_theme_color(level),
            "summary": title,
            "sections": [{
                "activityTitle": title,
                "facts": [
                    {"name": "Expected", "value": str(report.expected_count)},
                    {"name": "Actual", "value": str(report.actual_count)},
                    {"name": "Degraded", "value": "Yes" if report.degraded else "No"},
                ] + [{"name": issue["severity"].title(), "value": issue["message"]} for issue in report.issues],
            }],
        }
        delivered = self._post(card, level)
        if not delivered and self.fallback_to_console:
            print(f"\n🛫 {title}")
            for issue in report.issues:
                print(f"   - [{issue['severity']}] {issue['message']}")
        return delivered

    # =========================================================================
    # 📤 DELIVERY
    # =========================================================================

    def _post(self, card: Dict[str, Any], level: NotificationLevel) -> bool:
        if not self.webhook_url:
            logger.info("📝 No Teams webhook configured - using console output")
            return False
        try:
            response = requests.post(
                self.webhook_url,
                headers={"Content-Type": "application/json"},
                json=card,
                timeout=30
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"❌ Error sending Teams notification: {e}")
            return False

        if response.status_code in [200, 202]:  # Teams often returns 202 (Accepted)
            logger.info(f"✅ Teams notification sent successfully ({level.value.upper()})")
            return True
        logger.error(f"❌ Teams notification failed: {response.status_code} - {response.text}")
        return False

    def _fallback_to_console(self, title: str, level: NotificationLevel, run: MaintenanceRun):
        """Fallback to console output when Teams webhook is unavailable"""
        counts = run.summary_counts()
        print(f"\n{'='*60}")
        print(f"📨 NOTIFICATION FALLBACK - {level.value.upper()}")
        print(f"📋 {title}")
        print(f"{'='*60}")
        print(f"   Run: {run.run_id}")
        print("   " + " | ".join(f"{name}: {value}" for name, value in counts.items()))
        if run.used_fallback:
            print("   🔁 Rule-based fallback plan used")
        if run.abort_reason:
            print(f"   ❌ Aborted: {run.abort_reason}")

        if self.session_errors:
            print(f"\n❌ ERRORS ({len(self.session_errors)}):")
            for i, error in enumerate(self.session_errors[-5:], 1):
                print(f"   {i}. {error['message']}")

        if self.session_warnings:
            print(f"\n⚠️  WARNINGS ({len(self.session_warnings)}):")
            for i, warning in enumerate(self.session_warnings[-3:], 1):
                print(f"   {i}. {warning['message']}")

        print(f"{'='*60}\n")

    def _get_theme_color(self, level: NotificationLevel) -> str:
        """Get Teams card color based on severity"""
        colors = {
            NotificationLevel.INFO: "28a745",      # Green
            NotificationLevel.WARNING: "ffc107",   # Yellow
            NotificationLevel.ERROR: "dc3545",     # Red
        }
        return colors.get(level, "17a2b8")


_STATUS_ICONS = {
    RunStatus.SUCCESS: "✅",
    RunStatus.PARTIAL_SUCCESS: "⚠️",
    RunStatus.FAILED: "❌",
}


def _format_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC") if value else "-"
