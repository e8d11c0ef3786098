import pytest

from fanqueue.errors import NotAuthorized, SessionExpired
from fanqueue.model.admission import QueueEntry
from fanqueue.model.pages import PageDecision, guard_page, page_url


def _entry(status):
    return QueueEntry(
        id=1, user_id="fan", match_id="m1", joined_at=0.0, status=status)


@pytest.mark.unit
class TestGuardPage:
    @pytest.mark.parametrize("status,page", [
        ("waiting", "waiting"),
        ("processing", "booking"),
        ("completed", "confirmation"),
    ])
    def test_matching_page_is_allowed(self, status, page):
        assert guard_page(_entry(status), page, "m1") == PageDecision(
            allowed=True, status=status)

    @pytest.mark.parametrize("status,page,redirect", [
        ("waiting", "booking", "/waiting/m1"),
        ("waiting", "confirmation", "/waiting/m1"),
        ("processing", "waiting", "/booking/m1"),
        ("completed", "booking", "/confirmation/m1"),
    ])
    def test_other_page_redirects(self, status, page, redirect):
        decision = guard_page(_entry(status), page, "m1")
        assert decision.allowed is False
        assert decision.redirect == redirect

    def test_no_entry_is_not_authorized(self):
        with pytest.raises(NotAuthorized) as exc:
            guard_page(None, "booking", "m1")
        assert exc.value.redirect == "/"

    @pytest.mark.parametrize("page", ["waiting", "booking", "confirmation"])
    def test_expired_entry_goes_home(self, page):
        with pytest.raises(SessionExpired) as exc:
            guard_page(_entry("expired"), page, "m1")
        assert exc.value.redirect == "/"

    def test_unknown_page(self):
        with pytest.raises(ValueError):
            guard_page(_entry("waiting"), "checkout", "m1")

    def test_page_url(self):
        assert page_url("booking", "abc") == "/booking/abc"
