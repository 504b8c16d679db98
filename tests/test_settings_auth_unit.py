# User value: This test makes sure admin changes are validated and audited, and only permitted users reach the upload tools.
import unittest
from unittest.mock import patch

from fastapi import HTTPException

from schemas.requests import SettingsUpdateRequest, TaskModelUpdate
from services.ai.base import AIProvider, ProviderUnavailableError
from services.ai.registry import ProviderRegistry, mask_secret
from services.auth import (
    ADMIN_SET,
    BLOCKED_SET,
    PERMISSION_MUSIC_UPLOAD,
    PERMISSION_SYSTEM_CONFIG,
    has_permission,
    permission_set_key,
    require_service_or_permission,
    verify_google_id_token,
)
from services.settings import SettingsService, SettingsValidationError
from support import fake_redis


class _Fake(AIProvider):
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _complete(self, prompt, system_prompt, images, json_mode):
        return "{}"


class _FakeOpenAI(_Fake):
    name = "openai"


class _FakeAnthropic(_Fake):
    name = "anthropic"


class SettingsUnitTests(unittest.TestCase):
    def setUp(self):
        self.settings = SettingsService(fake_redis())

    def test_update_records_audit_entry(self):
        updated = self.settings.update(
            SettingsUpdateRequest(auto_approve_threshold=92, first_pass=TaskModelUpdate(model="gpt-4o-mini")),
            actor="admin@example.com",
        )
        self.assertEqual(updated.auto_approve_threshold, 92)
        self.assertEqual(self.settings.load().first_pass.model, "gpt-4o-mini")

        audit = self.settings.audit_log()
        self.assertEqual(audit[0]["actor"], "admin@example.com")
        self.assertIn("auto_approve_threshold", audit[0]["changes"])
        self.assertIn("first_pass.model", audit[0]["changes"])

    def test_skip_threshold_above_auto_threshold_is_refused(self):
        with self.assertRaises(SettingsValidationError):
            self.settings.update(
                SettingsUpdateRequest(auto_approve_threshold=50, skip_parse_threshold=70),
                actor="admin@example.com",
            )
        self.assertEqual(self.settings.audit_log(), [])

    def test_unchanged_update_writes_nothing(self):
        current = self.settings.load()
        self.settings.update(SettingsUpdateRequest(enabled=current.enabled), actor="admin@example.com")
        self.assertEqual(self.settings.audit_log(), [])


class RegistryUnitTests(unittest.TestCase):
    def setUp(self):
        self.settings = SettingsService(fake_redis())
        self.settings.update(
            SettingsUpdateRequest(first_pass=TaskModelUpdate(provider="openai", model="gpt-4o")),
            actor="admin@example.com",
        )

    def test_selected_provider_is_used_when_configured(self):
        registry = ProviderRegistry(
            self.settings,
            fallback_order=["openai", "anthropic"],
            providers={"openai": _FakeOpenAI(api_key="sk-1"), "anthropic": _FakeAnthropic(api_key="ak-1")},
        )
        provider = registry.get_provider("first_pass")
        self.assertEqual(provider.name, "openai")
        self.assertEqual(provider.params.model, "gpt-4o")

    def test_falls_back_when_selected_provider_has_no_key(self):
        registry = ProviderRegistry(
            self.settings,
            fallback_order=["openai", "anthropic"],
            providers={"openai": _FakeOpenAI(api_key=""), "anthropic": _FakeAnthropic(api_key="ak-1")},
        )
        provider = registry.get_provider("first_pass")
        self.assertEqual(provider.name, "anthropic")
        self.assertEqual(provider.params.model, "")

    def test_no_configured_provider_raises(self):
        registry = ProviderRegistry(
            self.settings,
            fallback_order=["openai"],
            providers={"openai": _FakeOpenAI(api_key="")},
        )
        with self.assertRaises(ProviderUnavailableError):
            registry.get_provider("first_pass")

    def test_mask_secret(self):
        self.assertIsNone(mask_secret(""))
        self.assertEqual(mask_secret("short"), "****")
        self.assertEqual(mask_secret("sk-1234567890abcd"), "sk-****abcd")


class AuthUnitTests(unittest.TestCase):
    def setUp(self):
        self.r = fake_redis()

    def test_has_permission(self):
        self.r.sadd(ADMIN_SET, "admin@example.com")
        self.r.sadd(permission_set_key(PERMISSION_MUSIC_UPLOAD), "musician@example.com")

        self.assertTrue(has_permission({"email": "admin@example.com"}, PERMISSION_SYSTEM_CONFIG, r=self.r))
        self.assertTrue(has_permission({"email": "Musician@Example.com"}, PERMISSION_MUSIC_UPLOAD, r=self.r))
        self.assertFalse(has_permission({"email": "musician@example.com"}, PERMISSION_SYSTEM_CONFIG, r=self.r))
        self.assertFalse(has_permission({}, PERMISSION_MUSIC_UPLOAD, r=self.r))
        self.assertTrue(has_permission({"service": True}, PERMISSION_SYSTEM_CONFIG, r=self.r))

    def test_blocked_user_is_refused(self):
        self.r.sadd(BLOCKED_SET, "blocked@example.com")
        payload = {
            "iss": "https://accounts.google.com",
            "aud": "client-1",
            "exp": 4102444800,
            "email": "Blocked@example.com",
            "email_verified": True,
            "sub": "1",
        }
        with patch.dict("os.environ", {"GOOGLE_CLIENT_ID": "client-1"}):
            with patch("services.auth.id_token.verify_oauth2_token", return_value=payload):
                with self.assertRaises(HTTPException) as ctx:
                    verify_google_id_token("token", r=self.r)
        self.assertEqual(ctx.exception.status_code, 403)

    def test_invalid_token_is_401(self):
        with patch.dict("os.environ", {"GOOGLE_CLIENT_ID": "client-1"}):
            with patch("services.auth.id_token.verify_oauth2_token", side_effect=ValueError("bad")):
                with self.assertRaises(HTTPException) as ctx:
                    verify_google_id_token("token", r=self.r)
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(ctx.exception.detail["error_code"], "AUTH_INVALID_TOKEN")

    def test_service_token_is_accepted(self):
        dependency = require_service_or_permission(PERMISSION_MUSIC_UPLOAD)
        with patch("config.SMART_UPLOAD_SERVICE_TOKEN", "svc-secret"):
            user = dependency(authorization="Bearer svc-secret")
            self.assertTrue(user["service"])
            with patch("services.auth.verify_google_id_token", side_effect=HTTPException(status_code=401)):
                with self.assertRaises(HTTPException):
                    dependency(authorization="Bearer wrong")


if __name__ == "__main__":
    unittest.main()
