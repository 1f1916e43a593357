#!/usr/bin/env python3
"""
list_store.py

Remote list store adapter for the Mailjet contact-list provider.

Every call is throttled by a shared token bucket and classified into
transient (retryable) or permanent failures. Calls are NOT retried here: the
execution engine wraps them in a RetryPolicy so the retry schedule lives in
one place. Add and remove are idempotent on the provider side.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import requests

from . import config
from .errors import PermanentRemoteError, TransientRemoteError
from .models import BounceEvent, ListHandle

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class TokenBucket:
    """Thread-safe token bucket: steady rate with a small burst"""

    def __init__(self, rate: float, capacity: Optional[float] = None, clock=time.monotonic, sleep=time.sleep):
        self.rate = float(rate)
        self.capacity = float(capacity if capacity is not None else max(rate, 1.0))
        self.tokens = self.capacity
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self):
        now = self._clock()
        elapsed = now - self._updated
        self._updated = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)

    def acquire(self):
        """Block until one token is available"""
        if self.rate <= 0:
            return
        while True:
            with self._lock:
                self._refill()
                if self.tokens >= 1:
                    self.tokens -= 1
                    return
                wait = (1 - self.tokens) / self.rate
            self._sleep(wait)


class ListDirectory:
    """Maps logical list handles to remote list ids"""

    def __init__(self, remote_ids: Dict[ListHandle, str]):
        missing = [h.value for h in ListHandle if not remote_ids.get(h)]
        if missing:
            raise ValueError(f"Remote list ids missing for: {', '.join(missing)}")
        self._remote_ids = dict(remote_ids)

    @classmethod
    def from_config(cls) -> "ListDirectory":
        return cls({ListHandle(k): v for k, v in config.list_id_map().items()})

    def remote_id(self, handle: ListHandle) -> str:
        return self._remote_ids[handle]


class ListStore:
    """
    Interface of the remote contact-list provider.

    fetch_members pages are ordered oldest-enrolled first; a None page token
    means the last page was returned.
    """

    def get_count(self, handle: ListHandle) -> int:
        raise NotImplementedError

    def add_member(self, handle: ListHandle, contact_id: int) -> bool:
        raise NotImplementedError

    def remove_member(self, handle: ListHandle, contact_id: int) -> bool:
        raise NotImplementedError

    def fetch_members(self, handle: ListHandle, page_token: Optional[str] = None) -> Tuple[List[int], Optional[str]]:
        raise NotImplementedError

    def fetch_bounce_events(self, campaign_id: str) -> List[BounceEvent]:
        raise NotImplementedError

    def fetch_all_members(self, handle: ListHandle) -> List[int]:
        """Walk every page of a list, oldest-enrolled first"""
        members = []
        token = None
        while True:
            page, token = self.fetch_members(handle, token)
            members.extend(page)
            if not token:
                return members


class MailjetListStore(ListStore):
    """Mailjet REST v3 implementation of the list store"""

    def __init__(self, directory: ListDirectory, api_key: str = None, secret_key: str = None,
                 base_url: str = None, timeout: float = 30.0, rate_limiter: Optional[TokenBucket] = None,
                 page_size: int = 1000, session: Optional[requests.Session] = None):
        self.directory = directory
        self.base_url = (base_url or config.MAILJET_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.page_size = page_size
        self.rate_limiter = rate_limiter or TokenBucket(rate=10)

        self.session = session or requests.Session()
        self.session.auth = (api_key or config.MAILJET_API_KEY, secret_key or config.MAILJET_SECRET_KEY)
        self.session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': 'Listkeeper/1.0'
        })

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        """Throttle, send and classify one request"""
        self.rate_limiter.acquire()
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise TransientRemoteError(f"{method} {path}: {e}")
        except requests.exceptions.RequestException as e:
            raise PermanentRemoteError(f"{method} {path}: {e}")

        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientRemoteError(
                f"{method} {path} returned {response.status_code}", status_code=response.status_code)
        if response.status_code >= 400:
            raise PermanentRemoteError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code)
        return response

    def _data(self, response: requests.Response) -> List[Dict]:
        try:
            return response.json().get("Data", [])
        except ValueError as e:
            raise TransientRemoteError(f"Unparseable provider response: {e}")

    def get_count(self, handle: ListHandle) -> int:
        list_id = self.directory.remote_id(handle)
        data = self._data(self._request("GET", f"contactslist/{list_id}"))
        if not data:
            raise PermanentRemoteError(f"List {list_id} ({handle.value}) not found", status_code=404)
        return int(data[0].get("SubscriberCount", 0))

    def _manage(self, handle: ListHandle, contact_id: int, action: str):
        list_id = self.directory.remote_id(handle)
        payload = {"ContactsLists": [{"ListID": int(list_id), "Action": action}]}
        return self._request("POST", f"contact/{int(contact_id)}/managecontactslists", json=payload)

    def add_member(self, handle: ListHandle, contact_id: int) -> bool:
        # addforce is a no-op for existing members
        self._manage(handle, contact_id, "addforce")
        logger.debug(f"✅ Added contact {contact_id} to {handle.value}")
        return True

    def remove_member(self, handle: ListHandle, contact_id: int) -> bool:
        try:
            self._manage(handle, contact_id, "remove")
        except PermanentRemoteError as e:
            if e.status_code == 404:
                logger.debug(f"📝 Contact {contact_id} not found in {handle.value} (already removed)")
                return True
            raise
        logger.debug(f"✅ Removed contact {contact_id} from {handle.value}")
        return True

    def fetch_members(self, handle: ListHandle, page_token: Optional[str] = None) -> Tuple[List[int], Optional[str]]:
        list_id = self.directory.remote_id(handle)
        offset = int(page_token or 0)
        params = {
            "ContactsList": list_id,
            "Limit": self.page_size,
            "Offset": offset,
            "Sort": "ID",
        }
        data = self._data(self._request("GET", "listrecipient", params=params))
        ids = [int(row["ContactID"]) for row in data
               if row.get("ContactID") is not None and not row.get("IsUnsubscribed")]
        next_token = str(offset + len(data)) if len(data) >= self.page_size else None
        logger.debug(f"📄 {handle.value}: page at offset {offset} returned {len(ids)} members")
        return ids, next_token

    def fetch_bounce_events(self, campaign_id: str) -> List[BounceEvent]:
        events = []
        offset = 0
        while True:
            params = {"CampaignID": campaign_id, "Limit": self.page_size, "Offset": offset}
            data = self._data(self._request("GET", "bouncestatistics", params=params))
            for row in data:
                if row.get("ContactID") is None:
                    continue
                bounce_type = "hard" if row.get("IsStatePermanent") else "soft"
                if row.get("IsSpam"):
                    bounce_type = "spam"
                events.append(BounceEvent(
                    contact_id=int(row["ContactID"]),
                    email=row.get("Email", ""),
                    bounce_type=bounce_type,
                    campaign_id=str(campaign_id),
                    bounced_at=_parse_timestamp(row.get("BouncedAt")),
                    error=str(row.get("Comment") or row.get("StateID") or ""),
                ))
            if len(data) < self.page_size:
                break
            offset += len(data)
        logger.info(f"📥 Fetched {len(events)} bounce events for campaign {campaign_id}")
        return events


def _parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
