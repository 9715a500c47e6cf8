"""Email node: sends one message over SMTP with aiosmtplib."""

import asyncio
from datetime import datetime
from email.message import EmailMessage
from typing import Any, Dict

import aiosmtplib

from ..core.context import CancellationToken, ExecutionContext
from ..core.exceptions import NodeExecutionError
from ..models.configs import EmailConfig
from ..models.core import NodeType
from .base import NodeExecutor


def build_message(config: EmailConfig) -> EmailMessage:
    """Build the MIME message for an Email node."""
    message = EmailMessage()
    message["From"] = config.from_address
    message["To"] = ", ".join(config.recipients)
    if config.cc_recipients:
        message["Cc"] = ", ".join(config.cc_recipients)
    message["Subject"] = config.subject

    if config.is_html:
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(config.body, subtype="html")
    else:
        message.set_content(config.body)
    return message


class EmailExecutor(NodeExecutor):
    """Sends mail through the configured SMTP server; any SMTP failure fails the node.

    SMTP port 465 uses implicit TLS, other ports upgrade with STARTTLS when
    SSL is enabled.
    """

    node_type = NodeType.EMAIL
    config_model = EmailConfig

    def __init__(self, timeout: float = 30.0):
        super().__init__()
        self.timeout = timeout

    def execute(self, configuration: Dict[str, Any], context: ExecutionContext,
                cancellation: CancellationToken) -> Dict[str, Any]:
        config: EmailConfig = self.parse_config(configuration)
        cancellation.raise_if_cancelled(context.execution_id)

        message = build_message(config)
        implicit_tls = config.ssl_enabled and config.smtp_port == 465

        try:
            # Pool workers have no running event loop of their own
            asyncio.run(aiosmtplib.send(
                message,
                recipients=config.recipients + config.cc_recipients,
                hostname=config.smtp_server,
                port=config.smtp_port,
                username=config.smtp_username if config.has_credentials else None,
                password=config.smtp_password if config.has_credentials else None,
                use_tls=implicit_tls,
                start_tls=config.ssl_enabled and not implicit_tls,
                timeout=self.timeout,
            ))
        except (aiosmtplib.SMTPException, OSError) as e:
            self.logger.error(f"Failed to send email to {config.to}: {str(e)}")
            raise NodeExecutionError(f"Failed to send email: {str(e)}", node_type=self.node_type.value)

        self.logger.info(f"Email sent successfully to {config.to}")
        return {
            "success": True,
            "to": config.to,
            "subject": config.subject,
            "sentAt": datetime.utcnow().isoformat(),
        }
