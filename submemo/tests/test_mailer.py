import unittest
from unittest.mock import MagicMock, patch

import requests

from submemo.mailer import InMemoryMailer, LoggingMailer, MailerError, ResendMailer


class ResendMailerTests(unittest.TestCase):
    def setUp(self):
        self.mailer = ResendMailer(api_key="re_test", from_email="SubMemo <n@example.com>")

    @patch("submemo.mailer.requests.post")
    def test_send_posts_message(self, mock_post):
        mock_post.return_value = MagicMock(ok=True, status_code=200)
        mock_post.return_value.json.return_value = {"id": "email_123"}

        result = self.mailer.send("to@example.com", "Subject", "Body")

        self.assertEqual(result, {"id": "email_123"})
        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "https://api.resend.com/emails")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer re_test")
        self.assertEqual(
            kwargs["json"],
            {
                "from": "SubMemo <n@example.com>",
                "to": ["to@example.com"],
                "subject": "Subject",
                "text": "Body",
            },
        )

    @patch("submemo.mailer.requests.post")
    def test_error_status_raises(self, mock_post):
        mock_post.return_value = MagicMock(ok=False, status_code=422, text="invalid from")
        with self.assertRaises(MailerError) as ctx:
            self.mailer.send("to@example.com", "Subject", "Body")
        self.assertIn("422", str(ctx.exception))

    @patch("submemo.mailer.requests.post")
    def test_network_error_raises(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(MailerError):
            self.mailer.send("to@example.com", "Subject", "Body")


class FallbackMailerTests(unittest.TestCase):
    def test_logging_mailer_returns_synthetic_id(self):
        with self.assertLogs("submemo.mailer", level="WARNING"):
            result = LoggingMailer(from_email="n@example.com").send("to@example.com", "S", "B")
        self.assertTrue(result["id"].startswith("logged-"))

    def test_in_memory_mailer_records_and_fails(self):
        mailer = InMemoryMailer(fail_for={"bad@example.com"})
        mailer.send("ok@example.com", "S", "B")
        with self.assertRaises(MailerError):
            mailer.send("bad@example.com", "S", "B")
        self.assertEqual([m["to"] for m in mailer.outbox], ["ok@example.com"])


if __name__ == "__main__":
    unittest.main()
