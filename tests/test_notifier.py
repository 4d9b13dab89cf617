import json

import httpx
import pytest

from commons.services.notifier import EmailNotifier, NotificationKind, format_amount, render

EXPENSE_DATA = {
    "submitter_name": "Ada Builder",
    "submitter_email": "ada@example.com",
    "expense_title": "Conference ticket",
    "amount_cents": 15000,
    "currency": "USD",
}


def notifier_with(handler, api_key="re_test_key"):
    return EmailNotifier(
        api_key=api_key,
        api_url="https://mail.test",
        sender="Commons <commons@example.org>",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


class TestRender:

    def test_format_amount(self):
        assert format_amount(15000, "USD") == "150.00 USD"
        assert format_amount(123456789, "EUR") == "1,234,567.89 EUR"
        assert format_amount(None, "USD") == "an unspecified amount"

    @pytest.mark.parametrize("kind", list(NotificationKind))
    def test_every_kind_renders_title_and_amount(self, kind):
        subject, body = render(kind, EXPENSE_DATA)
        assert "Conference ticket" in subject
        assert "150.00 USD" in body

    def test_rejection_includes_reason(self):
        _, body = render(NotificationKind.EXPENSE_REJECTED, dict(EXPENSE_DATA, rejection_reason="Missing receipt"))
        assert "Missing receipt" in body

    def test_payout_includes_tx_hash(self):
        _, body = render(NotificationKind.EXPENSE_PAID, dict(EXPENSE_DATA, tx_hash="0xfeed"))
        assert "0xfeed" in body

    def test_user_content_is_escaped(self):
        _, body = render(NotificationKind.EXPENSE_APPROVED, dict(EXPENSE_DATA, expense_title="<script>x</script>"))
        assert "<script>" not in body


class TestEmailNotifier:

    async def test_send_posts_to_resend(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "email_123"})

        sent = await notifier_with(handler).send(NotificationKind.EXPENSE_APPROVED, "ada@example.com", EXPENSE_DATA)

        assert sent is True
        assert len(requests) == 1
        request = requests[0]
        assert str(request.url) == "https://mail.test/emails"
        assert request.headers["Authorization"] == "Bearer re_test_key"
        payload = json.loads(request.content)
        assert payload["to"] == ["ada@example.com"]
        assert payload["from"] == "Commons <commons@example.org>"
        assert "approved" in payload["subject"]

    async def test_server_error_is_swallowed(self):
        notifier = notifier_with(lambda request: httpx.Response(500, json={"message": "down"}))
        assert await notifier.send(NotificationKind.EXPENSE_PAID, "ada@example.com", EXPENSE_DATA) is False

    async def test_transport_error_is_swallowed(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        assert await notifier_with(handler).send(NotificationKind.EXPENSE_PAID, "ada@example.com", EXPENSE_DATA) is False

    async def test_missing_api_key_is_swallowed(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        notifier = notifier_with(handler, api_key="")
        assert await notifier.send(NotificationKind.EXPENSE_SUBMITTED, "admin@example.com", EXPENSE_DATA) is False
        assert calls == []
