"""Email template rendering with Jinja2.

Templates live in ``helpdesk_jobs/email_templates`` as ``<name>.html`` and
``<name>.txt`` pairs. HTML is autoescaped, so user-provided values such as
usernames cannot inject markup.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from jinja2 import Environment, PackageLoader, select_autoescape

DEFAULT_SUBJECT = "Your OTP Code"

_SUBJECTS = {
    "register": "Verify your email address",
    "login": "Your sign-in code",
    "reset": "Reset your password",
}

_INTROS = {
    "register": "Use the code below to finish creating your account.",
    "login": "Use the code below to sign in.",
    "reset": "Use the code below to reset your password.",
}


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text: str
    html: str


@lru_cache(maxsize=1)
def get_environment() -> Environment:
    return Environment(
        loader=PackageLoader("helpdesk_jobs", "email_templates"),
        autoescape=select_autoescape(["html", "xml"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render_otp_email(
    otp: str,
    username: str,
    purpose: Optional[str] = None,
    logo_url: str = "",
    show_logo: bool = True,
    brand_name: str = "Helpdesk",
) -> RenderedEmail:
    """Render the OTP email for ``purpose`` (``register``, ``login``, ``reset``).

    The logo image is only rendered when ``show_logo`` is set and a
    ``logo_url`` is configured; otherwise the brand name is shown as text.

    Example:
        email = render_otp_email("123456", "ana", purpose="register")
        assert "123456" in email.html
    """
    key = (purpose or "").lower()
    subject = _SUBJECTS.get(key, DEFAULT_SUBJECT)
    context = {
        "subject": subject,
        "intro": _INTROS.get(key, "Use the code below to continue."),
        "otp": otp,
        "username": username,
        "logo_url": logo_url,
        "show_logo": bool(show_logo and logo_url),
        "brand_name": brand_name,
    }
    env = get_environment()
    html = env.get_template("otp_email.html").render(**context)
    text = env.get_template("otp_email.txt").render(**context)
    return RenderedEmail(subject=subject, text=text, html=html)
