"""
Tests for environment configuration and the password-reset mailer.
"""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from config import Config
from exceptions import ExternalServiceError
from mailer import send_password_reset


def test_from_env_reads_explicit_mapping():
    config = Config.from_env({
        "FLASK_SECRET_KEY": "abc",
        "MONGODB_URI": "mongodb://db:27017/shop",
        "MONGODB_DB_NAME": "shop",
        "MAPBOX_TOKEN": "pk.test",
        "CLOUDINARY_CLOUD_NAME": "surf",
        "CLOUDINARY_SECRET": "shh",
        "SMTP_PORT": "2525",
        "POSTS_PER_PAGE": "not-a-number",
    })

    assert config.secret_key == "abc"
    assert config.mongodb_uri == "mongodb://db:27017/shop"
    assert config.mongodb_db_name == "shop"
    assert config.mapbox_token == "pk.test"
    assert config.cloudinary_cloud_name == "surf"
    assert config.cloudinary_secret == "shh"
    assert config.smtp_port == 2525
    assert config.posts_per_page == 10
    assert config.cloudinary_folder == "surf-shop"


def test_from_env_generates_secret_when_missing():
    assert len(Config.from_env({}).secret_key) == 64


def test_flask_settings():
    settings = Config(secret_key="k", posts_per_page=5).flask_settings()
    assert settings["SECRET_KEY"] == "k"
    assert settings["POSTS_PER_PAGE"] == 5


def test_reset_link_is_logged_without_smtp(caplog):
    with caplog.at_level("INFO", logger="mailer"):
        sent = send_password_reset(Config(), "kelly@example.com", "http://localhost/reset/abc")

    assert sent is False
    assert "http://localhost/reset/abc" in caplog.text


def test_reset_mail_goes_through_smtp():
    config = Config(smtp_host="smtp.example.com", smtp_port=587, smtp_user="u", smtp_pass="p", smtp_from="shop@example.com")
    server = MagicMock()
    with patch("mailer.smtplib.SMTP") as smtp:
        smtp.return_value.__enter__.return_value = server
        assert send_password_reset(config, "kelly@example.com", "http://localhost/reset/abc") is True

    smtp.assert_called_once_with("smtp.example.com", 587, timeout=10)
    server.login.assert_called_once_with("u", "p")
    message = server.send_message.call_args.args[0]
    assert message["To"] == "kelly@example.com"
    assert message["From"] == "shop@example.com"
    assert "http://localhost/reset/abc" in message.get_content()


def test_smtp_failure_raises_service_error():
    config = Config(smtp_host="smtp.example.com")
    with patch("mailer.smtplib.SMTP", side_effect=smtplib.SMTPConnectError(421, "busy")):
        with pytest.raises(ExternalServiceError):
            send_password_reset(config, "kelly@example.com", "http://localhost/reset/abc")
