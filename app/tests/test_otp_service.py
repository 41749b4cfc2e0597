"""Tests for phone OTP send/verify.

WHAT: Rate limits, ownership checks, provider failure cleanup, attempt
      counting, expiry and the verified stamp on the lead
WHY: Codes cost money and are brute-forceable; both sides are limited

REFERENCES:
  - app/services/otp_service.py
  - app/routers/otp.py
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app.models import PhoneVerification, SuspiciousEvent, VerificationStatusEnum
from app.services import otp_service
from app.services.otp_service import OTPError, RequestContext, send_phone_otp, verify_phone_otp
from app.services.sms_service import SMSResult

CODE = "123456"


@pytest.fixture(autouse=True)
def fixed_code(monkeypatch):
    monkeypatch.setattr(otp_service, "generate_otp", lambda: CODE)


def _ctx(ip="203.0.113.9"):
    return RequestContext(ip_address=ip, user_agent="pytest", endpoint="/api/otp/send")


async def _send(db, lead, settings, ip="203.0.113.9"):
    return await send_phone_otp(db, str(lead.id), lead.phone_e164, settings, context=_ctx(ip))


# ============================================================================
# Send
# ============================================================================

class TestSend:

    @pytest.mark.asyncio
    async def test_send_stores_hash_only(self, test_db_session, test_lead, settings):
        result = await _send(test_db_session, test_lead, settings)

        assert result.phone_display == "***4567"
        assert result.provider == "mock"
        verification = test_db_session.get(PhoneVerification, result.verification_id)
        assert verification.status == VerificationStatusEnum.pending
        assert verification.otp_hash != CODE
        assert verification.provider_message_id.startswith("mock-")

    @pytest.mark.asyncio
    async def test_resend_replaces_pending(self, test_db_session, test_lead, settings):
        await _send(test_db_session, test_lead, settings)
        second = await _send(test_db_session, test_lead, settings)

        rows = test_db_session.query(PhoneVerification).all()
        assert [row.id for row in rows] == [second.verification_id]

    @pytest.mark.asyncio
    async def test_already_verified(self, test_db_session, make_lead, settings):
        lead = make_lead(phone_verified_at=datetime.now(timezone.utc))

        result = await _send(test_db_session, lead, settings)

        assert result.to_dict()["alreadyVerified"] is True
        assert test_db_session.query(PhoneVerification).count() == 0

    @pytest.mark.asyncio
    async def test_phone_mismatch(self, test_db_session, test_lead, settings):
        with pytest.raises(OTPError) as exc:
            await send_phone_otp(test_db_session, str(test_lead.id), "+971509999999", settings, context=_ctx())

        assert exc.value.status_code == 403
        assert test_db_session.query(SuspiciousEvent).one().event_type == "otp_phone_mismatch"

    @pytest.mark.asyncio
    async def test_unknown_lead(self, test_db_session, settings):
        with pytest.raises(OTPError) as exc:
            await send_phone_otp(test_db_session, str(uuid.uuid4()), "+971501234567", settings, context=_ctx())
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("phone", ["0501234567", "+0501234567", "phone"])
    async def test_bad_format(self, test_db_session, test_lead, settings, phone):
        with pytest.raises(OTPError) as exc:
            await send_phone_otp(test_db_session, str(test_lead.id), phone, settings)
        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_phone_rate_limit(self, test_db_session, test_lead, settings):
        for i in range(3):
            await _send(test_db_session, test_lead, settings, ip=f"203.0.113.{i}")

        with pytest.raises(OTPError) as exc:
            await _send(test_db_session, test_lead, settings, ip="203.0.113.99")

        assert exc.value.status_code == 429
        assert exc.value.extra["resetIn"] > 0
        events = test_db_session.query(SuspiciousEvent).filter_by(event_type="otp_rate_limit_phone").count()
        assert events == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error_code, status_code",
        [("throttled", 429), ("invalid_phone", 400), ("provider_down", 502), ("not_configured", 502)],
    )
    async def test_provider_failure_removes_row(
        self, test_db_session, test_lead, settings, monkeypatch, error_code, status_code
    ):
        async def failing_sms(phone, message, settings):
            return SMSResult(success=False, provider="twilio_sms", error="boom", error_code=error_code)

        monkeypatch.setattr(otp_service, "send_sms", failing_sms)

        with pytest.raises(OTPError) as exc:
            await _send(test_db_session, test_lead, settings)

        assert exc.value.status_code == status_code
        assert test_db_session.query(PhoneVerification).count() == 0


# ============================================================================
# Verify
# ============================================================================

class TestVerify:

    @pytest.mark.asyncio
    async def test_correct_code_verifies_lead(self, test_db_session, test_lead, settings):
        sent = await _send(test_db_session, test_lead, settings)

        result = verify_phone_otp(test_db_session, str(sent.verification_id), CODE)

        assert result.body["verified"] is True
        test_db_session.refresh(test_lead)
        assert test_lead.phone_verified_at is not None
        verification = test_db_session.get(PhoneVerification, sent.verification_id)
        assert verification.status == VerificationStatusEnum.verified

    @pytest.mark.asyncio
    async def test_verified_twice_is_ok(self, test_db_session, test_lead, settings):
        sent = await _send(test_db_session, test_lead, settings)
        verify_phone_otp(test_db_session, str(sent.verification_id), CODE)

        again = verify_phone_otp(test_db_session, str(sent.verification_id), CODE)

        assert again.already_verified is True

    @pytest.mark.asyncio
    async def test_wrong_code_counts_down_then_locks(self, test_db_session, test_lead, settings):
        sent = await _send(test_db_session, test_lead, settings)
        verification_id = str(sent.verification_id)

        remaining = []
        for _ in range(2):
            with pytest.raises(OTPError) as exc:
                verify_phone_otp(test_db_session, verification_id, "000000", context=_ctx())
            assert exc.value.status_code == 401
            remaining.append(exc.value.extra["remainingAttempts"])
        assert remaining == [2, 1]

        with pytest.raises(OTPError) as exc:
            verify_phone_otp(test_db_session, verification_id, "000000", context=_ctx())
        assert exc.value.status_code == 429
        assert exc.value.extra["locked"] is True

        # Locked even with the right code
        with pytest.raises(OTPError) as exc:
            verify_phone_otp(test_db_session, verification_id, CODE, context=_ctx())
        assert exc.value.status_code == 429
        assert test_db_session.query(SuspiciousEvent).filter_by(event_type="otp_max_attempts").count() >= 1

    @pytest.mark.asyncio
    async def test_parallel_guess_cannot_exceed_max_attempts(
        self, test_db_session, test_lead, settings, monkeypatch
    ):
        sent = await _send(test_db_session, test_lead, settings)
        verification = test_db_session.get(PhoneVerification, sent.verification_id)
        verification.attempts = 2
        test_db_session.commit()

        def wrong_code_while_another_guess_lands(otp, otp_hash):
            # Another request spends the last attempt after this one passed the attempts check
            test_db_session.query(PhoneVerification).filter(
                PhoneVerification.id == sent.verification_id
            ).update({PhoneVerification.attempts: 3}, synchronize_session=False)
            test_db_session.commit()
            return False

        monkeypatch.setattr(otp_service, "verify_otp", wrong_code_while_another_guess_lands)

        with pytest.raises(OTPError) as exc:
            verify_phone_otp(test_db_session, str(sent.verification_id), "000000", context=_ctx())

        assert exc.value.status_code == 429
        assert exc.value.extra["locked"] is True
        test_db_session.expire_all()
        verification = test_db_session.get(PhoneVerification, sent.verification_id)
        assert verification.attempts == 3
        assert verification.status == VerificationStatusEnum.failed

    @pytest.mark.asyncio
    async def test_expired(self, test_db_session, test_lead, settings):
        sent = await _send(test_db_session, test_lead, settings)
        later = datetime.now(timezone.utc) + timedelta(minutes=6)

        with pytest.raises(OTPError) as exc:
            verify_phone_otp(test_db_session, str(sent.verification_id), CODE, now=later)

        assert exc.value.status_code == 410
        verification = test_db_session.get(PhoneVerification, sent.verification_id)
        assert verification.status == VerificationStatusEnum.expired

    @pytest.mark.parametrize("otp", ["12345", "abcdef", "1234567"])
    def test_bad_format(self, test_db_session, otp):
        with pytest.raises(OTPError) as exc:
            verify_phone_otp(test_db_session, str(uuid.uuid4()), otp)
        assert exc.value.status_code == 400

    def test_unknown_verification(self, test_db_session):
        with pytest.raises(OTPError) as exc:
            verify_phone_otp(test_db_session, "not-a-uuid", CODE)
        assert exc.value.status_code == 404


# ============================================================================
# Endpoints
# ============================================================================

class TestOTPEndpoints:

    def test_send_and_verify(self, client, test_lead):
        sent = client.post("/api/otp/send", json={"leadId": str(test_lead.id), "phone": test_lead.phone_e164})

        assert sent.status_code == 200
        body = sent.json()
        assert body["phoneDisplay"] == "***4567"
        assert body["expiresIn"] == 300

        verified = client.post("/api/otp/verify", json={"verificationId": body["verificationId"], "otp": CODE})
        assert verified.status_code == 200
        assert verified.json()["leadId"] == str(test_lead.id)

    def test_phone_number_alias(self, client, test_lead):
        response = client.post(
            "/api/otp/send", json={"leadId": str(test_lead.id), "phoneNumber": test_lead.phone_e164}
        )
        assert response.status_code == 200

    def test_ip_rate_limit(self, client, test_lead):
        payload = {"leadId": str(test_lead.id), "phone": test_lead.phone_e164}
        for _ in range(2):
            assert client.post("/api/otp/send", json=payload).status_code == 200

        response = client.post("/api/otp/send", json=payload)

        assert response.status_code == 429
        assert response.json()["ok"] is False
        assert response.json()["resetIn"] > 0

    def test_missing_fields(self, client):
        response = client.post("/api/otp/send", json={})
        assert response.status_code == 400
        assert response.json()["error"] == "Missing leadId or phoneNumber"

    def test_wrong_code_body(self, client, test_lead):
        sent = client.post("/api/otp/send", json={"leadId": str(test_lead.id), "phone": test_lead.phone_e164})

        response = client.post(
            "/api/otp/verify", json={"verificationId": sent.json()["verificationId"], "otp": "000000"}
        )

        assert response.status_code == 401
        assert response.json()["remainingAttempts"] == 2
