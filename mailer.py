"""Invitation e-mail over SMTP."""
import html
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

logger = logging.getLogger(__name__)


class Mailer:
    def __init__(self, settings):
        self.settings = settings

    @property
    def configured(self) -> bool:
        s = self.settings
        if not (s.smtp_host and s.smtp_port and s.smtp_user and s.smtp_pass):
            return False
        return s.smtp_port.isdigit()

    def _send(self, to: str, subject: str, text: str, html_body: str) -> dict:
        if not self.configured:
            return {"sent": False, "skippedReason": "SMTP not configured"}

        s = self.settings
        port = int(s.smtp_port)
        secure = s.smtp_secure if s.smtp_secure is not None else port == 465

        message = EmailMessage()
        message["From"] = s.smtp_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        message.add_alternative(html_body, subtype="html")

        smtp_cls = smtplib.SMTP_SSL if secure else smtplib.SMTP
        try:
            with smtp_cls(s.smtp_host, port, timeout=10) as smtp:
                if not secure:
                    smtp.starttls()
                smtp.login(s.smtp_user, s.smtp_pass)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"Failed to send mail to {to}: {e}")
            return {"sent": False, "error": str(e) or "SMTP send failed"}
        return {"sent": True, "messageId": message.get("Message-ID")}

    def send_game_invitation(
        self,
        to_email: str,
        invited_by_email: Optional[str],
        invited_by_name: Optional[str],
        game_url: str,
        opponent_exists: bool,
    ) -> dict:
        inviter = invited_by_name or invited_by_email or "A player"
        if opponent_exists:
            note = "Your opponent started a game with you."
        else:
            note = (
                "Your opponent started a game with you. This email is not registered yet, "
                "but you can sign in with Google using this email to play."
            )
        return self._send(
            to=to_email,
            subject="You were invited to a chess game",
            text=f"{inviter} invited you to a chess game.\n\n{note}\n\nOpen game: {game_url}",
            html_body=(
                f"<p><strong>{html.escape(inviter)}</strong> invited you to a chess game.</p>"
                f"<p>{html.escape(note)}</p>"
                f'<p><a href="{html.escape(game_url)}">Open game</a></p>'
            ),
        )

    def send_turn_reminder(
        self,
        to_email: str,
        game_id: str,
        minutes_since_last_move: float,
        min_minutes_since_last_move: int,
        game_url: str,
    ) -> dict:
        waited = int(minutes_since_last_move)
        timing = (
            f"Last move was {waited} minute(s) ago "
            f"(threshold: {min_minutes_since_last_move} minute(s))."
        )
        return self._send(
            to=to_email,
            subject="Chess reminder: it's your move",
            text=f"It's your turn to move in game {game_id}.\n\n{timing}\n\nOpen game: {game_url}",
            html_body=(
                f"<p>It's your turn to move in game <code>{html.escape(game_id)}</code>.</p>"
                f"<p>{html.escape(timing)}</p>"
                f'<p><a href="{html.escape(game_url)}">Open game</a></p>'
            ),
        )
