#!/usr/bin/env python3
"""
config.py

Control center for list maintenance operations.

One master list, three rotating campaign lists and one append-only
suppression list live in Mailjet. Everything the maintenance engine needs to
reach them, and every safety limit it enforces, is configured here.

🎮 EXECUTION COMMANDS:
=====================
   python -m listkeeper.main post-send <send_id> <campaign_id> <list>  # Post-send maintenance
   python -m listkeeper.main weekly-sweep                              # Weekly health sweep
   python -m listkeeper.main pre-send <list> <count>                   # Read-only pre-send check
   python -m listkeeper.main serve                                     # Workers + hourly scheduler
"""

import os
from typing import Dict, Any, List, Tuple
from dotenv import load_dotenv

load_dotenv(override=True)

# =============================================================================
# 🔐 API CREDENTIALS
# =============================================================================

# Mailjet API Configuration (basic auth: key + secret)
MAILJET_API_KEY = os.getenv("MAILJET_API_KEY", "").strip()
MAILJET_SECRET_KEY = os.getenv("MAILJET_SECRET_KEY", "").strip()
MAILJET_BASE_URL = os.getenv("MAILJET_BASE_URL", "https://api.mailjet.com/v3/REST").rstrip("/")

# Advisory inference service (suppression / rebalancing plans)
ADVISORY_URL = os.getenv("ADVISORY_URL", "").strip()
ADVISORY_API_KEY = os.getenv("ADVISORY_API_KEY", "").strip()

# Microsoft Teams Notifications
TEAMS_WEBHOOK_URL = os.getenv("TEAMS_WEBHOOK_URL", "")

# =============================================================================
# 📋 LIST UNIVERSE - Remote Mailjet list IDs
# =============================================================================

MASTER_LIST_ID = os.getenv("MASTER_LIST_ID", "")            # Source of truth
CAMPAIGN_1_LIST_ID = os.getenv("CAMPAIGN_1_LIST_ID", "")    # Round 1 send target
CAMPAIGN_2_LIST_ID = os.getenv("CAMPAIGN_2_LIST_ID", "")    # Round 2 send target
CAMPAIGN_3_LIST_ID = os.getenv("CAMPAIGN_3_LIST_ID", "")    # Round 3 send target
SUPPRESSION_LIST_ID = os.getenv("SUPPRESSION_LIST_ID", "")  # Append-only, never sent to

# =============================================================================
# 🗂️ STORAGE SETTINGS
# =============================================================================

# Logging level
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Log directory
LOG_DIR = os.getenv("LOG_DIR", "logs")

# Relational audit store
AUDIT_DB_PATH = os.getenv("AUDIT_DB_PATH", "audit/listkeeper_audit.db")

# Progress bars on per-contact loops
SHOW_PROGRESS = os.getenv("SHOW_PROGRESS", "true").lower() == "true"


# =============================================================================
# ⚙️ ENGINE PARAMETERS
# =============================================================================

class EngineConfig:
    """Safety limits, timeouts and retry schedule for maintenance runs"""

    def __init__(self, **overrides):
        self.load_config()
        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown engine setting: {key}")
            setattr(self, key, value)

    def load_config(self):
        """Load engine configuration from environment variables"""

        # =====================================================================
        # ⚖️ BALANCE & SAFETY CAPS
        # =====================================================================

        # Max deviation of any campaign list from the equal split, in percent
        self.balance_tolerance_pct = float(os.getenv("BALANCE_TOLERANCE_PCT", "5"))

        # Accepted suppressions per run, as percent of combined campaign size
        self.suppression_cap_pct = float(os.getenv("SUPPRESSION_CAP_PCT", "10"))

        # Accepted rebalancing movements per run
        self.max_movements_per_run = int(os.getenv("MAX_MOVEMENTS_PER_RUN", "500"))

        # Over-correction guard multiplier applied to the tolerance
        self.overcorrection_factor = float(os.getenv("OVERCORRECTION_FACTOR", "1.5"))

        # =====================================================================
        # 🚀 CONCURRENCY & RATE LIMITING
        # =====================================================================

        self.max_in_flight = int(os.getenv("MAX_IN_FLIGHT", "10"))
        self.rate_limit_per_second = float(os.getenv("RATE_LIMIT_PER_SECOND", "10"))
        self.worker_count = int(os.getenv("WORKER_COUNT", "2"))

        # =====================================================================
        # ⏱️ TIMEOUTS
        # =====================================================================

        self.advisory_timeout = float(os.getenv("ADVISORY_TIMEOUT", "30"))
        self.list_store_timeout = float(os.getenv("LIST_STORE_TIMEOUT", "30"))

        # =====================================================================
        # 🔄 RETRY LOGIC
        # =====================================================================

        # Retries after the first attempt for transient remote errors
        self.max_retries = int(os.getenv("MAX_RETRIES", "3"))
        self.retry_base_delay = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
        self.retry_factor = float(os.getenv("RETRY_FACTOR", "2.0"))
        self.retry_max_delay = float(os.getenv("RETRY_MAX_DELAY", "4.0"))

        # Total attempts for the compensating re-add after a failed move
        self.compensation_attempts = int(os.getenv("COMPENSATION_ATTEMPTS", "2"))

        # =====================================================================
        # 💾 STATE CACHE
        # =====================================================================

        self.cache_freshness_seconds = float(os.getenv("CACHE_FRESHNESS_SECONDS", "3600"))

        # =====================================================================
        # 📅 SCHEDULING
        # =====================================================================

        # Minimum time between a send and its post-send maintenance
        self.post_send_min_hours = float(os.getenv("POST_SEND_MIN_HOURS", "24"))
        self.weekly_sweep_interval_hours = float(os.getenv("WEEKLY_SWEEP_INTERVAL_HOURS", "168"))
        self.scheduler_poll_seconds = float(os.getenv("SCHEDULER_POLL_SECONDS", "3600"))
        # Delay before re-queueing a run that hit lock contention or the gate
        self.requeue_delay_seconds = float(os.getenv("REQUEUE_DELAY_SECONDS", "300"))
        # Lock-contention requeues before a queued run is finalized as failed
        self.lock_retry_limit = int(os.getenv("LOCK_RETRY_LIMIT", "12"))

        # =====================================================================
        # 🛫 PRE-SEND VALIDATION
        # =====================================================================

        self.pre_send_count_tolerance_pct = float(os.getenv("PRE_SEND_COUNT_TOLERANCE_PCT", "2"))

        self.show_progress = SHOW_PROGRESS

    def get_retry_config(self) -> Dict[str, Any]:
        """Get retry schedule settings"""
        return {
            'max_retries': self.max_retries,
            'base_delay': self.retry_base_delay,
            'factor': self.retry_factor,
            'max_delay': self.retry_max_delay,
            'compensation_attempts': self.compensation_attempts
        }

    def get_safety_config(self) -> Dict[str, Any]:
        """Get balance and safety cap settings"""
        return {
            'tolerance_pct': self.balance_tolerance_pct,
            'suppression_cap_pct': self.suppression_cap_pct,
            'max_movements_per_run': self.max_movements_per_run,
            'overcorrection_factor': self.overcorrection_factor
        }


def list_id_map() -> Dict[str, str]:
    """Configured remote ids keyed by list handle value"""
    return {
        "master": MASTER_LIST_ID,
        "campaign_1": CAMPAIGN_1_LIST_ID,
        "campaign_2": CAMPAIGN_2_LIST_ID,
        "campaign_3": CAMPAIGN_3_LIST_ID,
        "suppression": SUPPRESSION_LIST_ID,
    }


def validate_configuration() -> Tuple[bool, List[str], List[str]]:
    """
    Validate configuration settings before execution.

    Returns:
        (ok, errors, warnings)
    """
    errors = []
    warnings = []

    if not MAILJET_API_KEY:
        errors.append("MAILJET_API_KEY not configured")
    if not MAILJET_SECRET_KEY:
        errors.append("MAILJET_SECRET_KEY not configured")

    for handle, remote_id in list_id_map().items():
        if not remote_id:
            errors.append(f"Remote list id for '{handle}' not configured")

    ids = [remote_id for remote_id in list_id_map().values() if remote_id]
    if len(ids) != len(set(ids)):
        errors.append("Two list handles point at the same remote list")

    if not ADVISORY_URL:
        warnings.append("ADVISORY_URL is empty - every run will use the rule-based fallback")
    if not TEAMS_WEBHOOK_URL:
        warnings.append("TEAMS_WEBHOOK_URL is empty - run summaries go to the console")

    return not errors, errors, warnings
