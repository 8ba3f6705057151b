"""
Email sending for contract outcomes and account notices.

The transport is an external collaborator behind ``EmailSender``. Bodies are
rendered here with Jinja2 so every transport receives finished HTML.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from jinja2 import Environment, select_autoescape

logger = logging.getLogger(__name__)

APP_NAME = "RentalHub"

CONTRACT_SIGNED_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <title>Contract signed - {{ app_name }}</title>
</head>
<body>
    <h2>Your rental contract is fully signed</h2>
    <p>Hello {{ recipient_name }},</p>
    <p>Both parties have signed contract #{{ contract_id }} for
       <strong>{{ item_title }}</strong> (order #{{ order_id }}).</p>
    <p>Rental period: {{ start_at }} to {{ end_at }}.</p>
    <p>Signed at {{ signed_at }}.</p>
    <p>{{ app_name }}</p>
</body>
</html>
"""

SIGNATURE_EXPIRED_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<body>
    <p>Hello {{ recipient_name }},</p>
    <p>Your saved signature expired on {{ valid_to }}. Please create a new one
       before signing your next contract.</p>
    <p>{{ app_name }}</p>
</body>
</html>
"""

ACCOUNT_BANNED_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<body>
    <p>Hello {{ recipient_name }},</p>
    <p>Your {{ app_name }} account has been suspended.</p>
    {% if reason %}<p>Reason: {{ reason }}</p>{% endif %}
    <p>Reply to this email if you believe this is a mistake.</p>
</body>
</html>
"""


_env = Environment(autoescape=select_autoescape(default_for_string=True))


def render_email(template_source: str, context: Dict[str, Any]) -> str:
    template = _env.from_string(template_source)
    return template.render(app_name=APP_NAME, **context)


class EmailSender(ABC):
    """Outbound email transport"""

    @abstractmethod
    def send(self, to: str, subject: str, html: str) -> bool:
        """Send one HTML email"""


class LoggingEmailSender(EmailSender):
    """Logs emails instead of delivering them"""

    def send(self, to: str, subject: str, html: str) -> bool:
        logger.info(f"[EMAIL] To {to} - {subject} ({len(html)} bytes)")
        return True


class EmailService:
    def __init__(self, sender: Optional[EmailSender] = None):
        self.sender = sender or LoggingEmailSender()

    def send_contract_signed(self, to: str, context: Dict[str, Any]) -> bool:
        html = render_email(CONTRACT_SIGNED_HTML_TEMPLATE, context)
        subject = f"{APP_NAME} - Contract #{context.get('contract_id')} fully signed"
        return self.sender.send(to, subject, html)

    def send_signature_expired(self, to: str, context: Dict[str, Any]) -> bool:
        html = render_email(SIGNATURE_EXPIRED_HTML_TEMPLATE, context)
        return self.sender.send(to, f"{APP_NAME} - Your signature has expired", html)

    def send_account_banned(self, to: str, context: Dict[str, Any]) -> bool:
        html = render_email(ACCOUNT_BANNED_HTML_TEMPLATE, context)
        return self.sender.send(to, f"{APP_NAME} - Your account has been suspended", html)
