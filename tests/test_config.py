import base64
import json

import pytest
from cryptography.fernet import Fernet
from pydantic import ValidationError

from social.graze.bookshelf.app.config import Settings
from social.graze.bookshelf.app.util.__main__ import genCryptoKey, genJwks


class TestSettings:
    def test_urls(self):
        settings = Settings(external_hostname="books.example.com")
        assert settings.base_url == "https://books.example.com"
        assert settings.client_id == "https://books.example.com/client-metadata.json"
        assert settings.redirect_uri == "https://books.example.com/oauth/callback"

    def test_explicit_scheme(self):
        settings = Settings(external_hostname="http://localhost:5100/")
        assert settings.client_id == "http://localhost:5100/client-metadata.json"

    def test_encryption_key_from_string(self):
        settings = Settings(encryption_key=genCryptoKey())
        token = settings.encryption_key.encrypt(b"hello")
        assert settings.encryption_key.decrypt(token) == b"hello"

    def test_encryption_key_invalid(self):
        with pytest.raises(ValidationError):
            Settings(encryption_key=12345)

    def test_json_web_keys_from_file(self, tmp_path):
        path = tmp_path / "jwks.json"
        path.write_text(genJwks(2))

        settings = Settings(json_web_keys=str(path))

        assert len(settings.json_web_keys["keys"]) == 2

    def test_json_web_keys_invalid(self):
        with pytest.raises(ValidationError):
            Settings(json_web_keys=42)

    def test_from_environment(self, monkeypatch):
        kid = json.loads(genJwks(1))["keys"][0]["kid"]
        monkeypatch.setenv("SERVICE_AUTH_KEYS", f'["{kid}"]')
        monkeypatch.setenv("PORT", "8080")
        monkeypatch.setenv("STATE_MAX_AGE", "120")

        settings = Settings()

        assert settings.service_auth_keys == [kid]
        assert settings.http_port == 8080
        assert settings.state_max_age == 120


class TestUtil:
    def test_gen_crypto_key(self):
        Fernet(base64.b64decode(genCryptoKey()))
