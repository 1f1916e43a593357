from unittest.mock import Mock

import pytest
import requests

from listkeeper.errors import PermanentRemoteError, TransientRemoteError
from listkeeper.list_store import ListDirectory, MailjetListStore, TokenBucket
from listkeeper.models import ListHandle

REMOTE_IDS = {
    ListHandle.MASTER: "100",
    ListHandle.CAMPAIGN_1: "101",
    ListHandle.CAMPAIGN_2: "102",
    ListHandle.CAMPAIGN_3: "103",
    ListHandle.SUPPRESSION: "199",
}


def response(status_code=200, data=None, text=""):
    return Mock(status_code=status_code, text=text, json=lambda: {"Data": data or []})


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def mailjet(session):
    return MailjetListStore(ListDirectory(REMOTE_IDS), api_key="key", secret_key="secret",
                            base_url="https://api.mailjet.test/v3/REST", rate_limiter=TokenBucket(rate=0),
                            page_size=2, session=session)


class TestListDirectory:
    def test_missing_ids_are_rejected(self):
        ids = dict(REMOTE_IDS)
        ids[ListHandle.SUPPRESSION] = ""
        with pytest.raises(ValueError):
            ListDirectory(ids)

    def test_remote_id_lookup(self):
        assert ListDirectory(REMOTE_IDS).remote_id(ListHandle.CAMPAIGN_2) == "102"


class TestMailjetListStore:
    def test_get_count_reads_subscriber_count(self, mailjet, session):
        session.request.return_value = response(data=[{"ID": 101, "SubscriberCount": 1040}])
        assert mailjet.get_count(ListHandle.CAMPAIGN_1) == 1040
        method, url = session.request.call_args[0]
        assert method == "GET"
        assert url == "https://api.mailjet.test/v3/REST/contactslist/101"

    def test_add_member_posts_addforce(self, mailjet, session):
        session.request.return_value = response(status_code=201)
        assert mailjet.add_member(ListHandle.SUPPRESSION, 555) is True
        args, kwargs = session.request.call_args
        assert args[1].endswith("/contact/555/managecontactslists")
        assert kwargs["json"] == {"ContactsLists": [{"ListID": 199, "Action": "addforce"}]}

    def test_remove_of_missing_member_counts_as_success(self, mailjet, session):
        session.request.return_value = response(status_code=404, text="Object not found")
        assert mailjet.remove_member(ListHandle.CAMPAIGN_1, 9) is True

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_rate_limit_and_server_errors_are_transient(self, mailjet, session, status):
        session.request.return_value = response(status_code=status)
        with pytest.raises(TransientRemoteError) as exc:
            mailjet.add_member(ListHandle.CAMPAIGN_1, 1)
        assert exc.value.status_code == status

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_client_errors_are_permanent(self, mailjet, session, status):
        session.request.return_value = response(status_code=status, text="bad")
        with pytest.raises(PermanentRemoteError):
            mailjet.add_member(ListHandle.CAMPAIGN_1, 1)

    def test_timeouts_are_transient(self, mailjet, session):
        session.request.side_effect = requests.exceptions.Timeout("read timed out")
        with pytest.raises(TransientRemoteError):
            mailjet.get_count(ListHandle.MASTER)

    def test_fetch_members_pages_by_offset(self, mailjet, session):
        session.request.side_effect = [
            response(data=[{"ContactID": 1}, {"ContactID": 2}]),
            response(data=[{"ContactID": 3}, {"ContactID": 4, "IsUnsubscribed": True}]),
            response(data=[]),
        ]
        assert mailjet.fetch_all_members(ListHandle.MASTER) == [1, 2, 3]
        offsets = [call.kwargs["params"]["Offset"] for call in session.request.call_args_list]
        assert offsets == [0, 2, 4]

    def test_fetch_bounce_events_classifies_bounces(self, mailjet, session):
        session.request.side_effect = [
            response(data=[
                {"ContactID": 1, "Email": "a@x.com", "IsStatePermanent": True, "BouncedAt": "2025-10-01T10:00:00Z"},
                {"ContactID": 2, "Email": "b@x.com", "IsStatePermanent": False},
            ]),
            response(data=[{"ContactID": 3, "Email": "c@x.com", "IsSpam": True}]),
        ]
        events = mailjet.fetch_bounce_events("cmp-9")
        assert [e.bounce_type for e in events] == ["hard", "soft", "spam"]
        assert events[0].is_hard
        assert events[0].bounced_at.year == 2025
        assert all(e.campaign_id == "cmp-9" for e in events)


class TestTokenBucket:
    def test_waits_when_bucket_is_empty(self):
        now = [0.0]
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            now[0] += seconds

        bucket = TokenBucket(rate=2, capacity=1, clock=lambda: now[0], sleep=sleep)
        bucket.acquire()
        assert sleeps == []
        bucket.acquire()
        assert sleeps == [0.5]
