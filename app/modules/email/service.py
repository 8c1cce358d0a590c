import smtplib
import ssl
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import List, Optional, Dict, Any
from pathlib import Path
import logging
from jinja2 import Environment, FileSystemLoader, select_autoescape
from app.core.config import settings

logger = logging.getLogger(__name__)


class EmailService:
    """
    Envío de correos (facturas, notificaciones) con templates Jinja2.
    """

    def __init__(self):
        self.smtp_server = settings.EMAIL_SMTP_SERVER
        self.smtp_port = settings.EMAIL_SMTP_PORT
        self.username = settings.EMAIL_USERNAME
        self.password = settings.EMAIL_PASSWORD
        self.use_tls = settings.EMAIL_USE_TLS
        self.from_email = settings.EMAIL_FROM
        self.from_name = settings.EMAIL_FROM_NAME
        self.frontend_url = settings.FRONTEND_URL

        template_dir = Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(['html', 'xml'])
        )

    def _create_smtp_connection(self) -> smtplib.SMTP:
        """Conexión SMTP con STARTTLS o SSL directo."""
        if self.use_tls:
            server = smtplib.SMTP(self.smtp_server, self.smtp_port)
            server.starttls(context=ssl.create_default_context())
        else:
            server = smtplib.SMTP_SSL(self.smtp_server, self.smtp_port)
        if self.username:
            server.login(self.username, self.password)
        return server

    def render_template(self, template_name: str, context: Dict[str, Any]) -> str:
        template = self.jinja_env.get_template(template_name)
        return template.render(**context)

    def build_message(
        self,
        to_emails: List[str],
        subject: str,
        html_content: Optional[str] = None,
        text_content: Optional[str] = None,
        cc_emails: Optional[List[str]] = None
    ) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{self.from_name} <{self.from_email}>"
        msg['To'] = ', '.join(to_emails)
        if cc_emails:
            msg['Cc'] = ', '.join(cc_emails)
        if text_content:
            msg.attach(MIMEText(text_content, 'plain', 'utf-8'))
        if html_content:
            msg.attach(MIMEText(html_content, 'html', 'utf-8'))
        return msg

    def send_email(
        self,
        to_emails: List[str],
        subject: str,
        html_content: Optional[str] = None,
        text_content: Optional[str] = None,
        cc_emails: Optional[List[str]] = None
    ) -> bool:
        """
        Enviar correo. Retorna False si falla; las tareas de Celery deciden
        si reintentar.
        """
        msg = self.build_message(to_emails, subject, html_content, text_content, cc_emails)
        recipients = list(to_emails) + list(cc_emails or [])
        try:
            with self._create_smtp_connection() as server:
                server.sendmail(self.from_email, recipients, msg.as_string())
            logger.info(f"Email '{subject}' sent to {', '.join(to_emails)}")
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending email to {', '.join(to_emails)}: {e}")
            return False

    def send_template_email(
        self,
        to_emails: List[str],
        subject: str,
        template_name: str,
        context: Dict[str, Any],
        cc_emails: Optional[List[str]] = None
    ) -> bool:
        html_content = self.render_template(template_name, context)
        return self.send_email(
            to_emails=to_emails,
            subject=subject,
            html_content=html_content,
            cc_emails=cc_emails
        )


# Singleton instance
email_service = EmailService()
