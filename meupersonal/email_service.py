import html
import logging
from typing import Optional, Union

import resend

from .config import EMAIL_FROM_ADDRESS, FRONTEND_URL, RESEND_API_KEY

logger = logging.getLogger(__name__)

resend.api_key = RESEND_API_KEY

BRAND_COLOR = "#002C4E"
ACCENT_COLOR = "#FFF373"


class EmailServiceError(Exception):
    pass


def _layout(title: str, body_html: str) -> str:
    return f"""<!DOCTYPE html>
<html lang="pt-BR">
  <body style="margin:0;padding:0;background:#f5f7fa;font-family:Arial,Helvetica,sans-serif;">
    <div style="max-width:560px;margin:24px auto;background:#ffffff;border-radius:8px;overflow:hidden;">
      <div style="background:{BRAND_COLOR};color:#ffffff;padding:20px 24px;font-size:20px;font-weight:bold;">
        Meu Personal
      </div>
      <div style="padding:24px;color:#1f2933;font-size:15px;line-height:1.5;">
        <h2 style="margin-top:0;color:{BRAND_COLOR};">{html.escape(title)}</h2>
        {body_html}
      </div>
    </div>
  </body>
</html>"""


def _button(link: str, label: str) -> str:
    return (
        f'<p style="text-align:center;margin:28px 0;">'
        f'<a href="{html.escape(link, quote=True)}" style="background:{ACCENT_COLOR};color:{BRAND_COLOR};'
        f'padding:12px 24px;border-radius:6px;text-decoration:none;font-weight:bold;">{html.escape(label)}</a></p>'
    )


async def send_email(
    to: Union[str, list[str]],
    subject: str,
    html_content: str,
    from_address: Optional[str] = None,
) -> dict:
    """
    Send an email through Resend

    Args:
        to: Recipient email(s)
        subject: Email subject line
        html_content: Rendered HTML body
        from_address: Optional custom from address

    Returns:
        Send response dict

    Raises:
        EmailServiceError: Resend not configured or the send failed
    """
    recipients = [to] if isinstance(to, str) else to
    sender = from_address or EMAIL_FROM_ADDRESS

    if not RESEND_API_KEY:
        logger.error("❌ No email service configured - RESEND_API_KEY missing")
        raise EmailServiceError("Email service not configured")

    try:
        logger.info(f"📧 Sending email via Resend to: {recipients}")
        response = resend.Emails.send(
            {
                "from": sender,
                "to": recipients,
                "subject": subject,
                "html": html_content,
            }
        )
        logger.info(f"✅ Email sent successfully via Resend: {response}")
        return response
    except Exception as e:
        logger.error(f"❌ Email send error to {recipients}: {e}")
        raise EmailServiceError(f"Failed to send email: {e}") from e


# ============================================
# Pre-built Email Templates
# ============================================


def build_reset_link(token: str) -> str:
    return f"{FRONTEND_URL.rstrip('/')}/redefinir-senha?token={token}"


async def send_password_reset_email(to: str, user_name: str, reset_link: str) -> dict:
    """Send the password reset link"""
    body = (
        f"<p>Olá, {html.escape(user_name)}.</p>"
        "<p>Recebemos um pedido para redefinir a sua senha. O link abaixo expira em 1 hora.</p>"
        f"{_button(reset_link, 'Redefinir senha')}"
        "<p>Se você não fez esse pedido, ignore este e-mail.</p>"
    )
    return await send_email(
        to=to,
        subject="Redefinição de senha - Meu Personal",
        html_content=_layout("Redefinir senha", body),
    )


async def send_welcome_email(to: str, user_name: str, welcome_credits: int = 0) -> dict:
    """Send welcome email to a newly registered user"""
    credits_line = (
        f"<p>Você já tem <strong>{welcome_credits} aulas</strong> de boas-vindas para agendar.</p>"
        if welcome_credits
        else ""
    )
    body = (
        f"<p>Olá, {html.escape(user_name)}! Sua conta foi criada.</p>"
        f"{credits_line}"
        f"{_button(FRONTEND_URL, 'Acessar o Meu Personal')}"
    )
    return await send_email(to=to, subject="Bem-vindo ao Meu Personal", html_content=_layout("Bem-vindo!", body))


async def send_in_background(send_func, *args, **kwargs) -> None:
    """BackgroundTasks entry point: a failed send is logged, the response already went out"""
    try:
        await send_func(*args, **kwargs)
    except EmailServiceError as e:
        logger.warning(f"⚠️ {send_func.__name__} not sent: {e}")
