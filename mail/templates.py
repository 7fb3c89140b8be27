"""
mail/templates.py -- Jinja2 rendering for transactional email bodies.

Templates live in mail/templates/. Autoescape is on: every value interpolated
into a template (names, URLs) is HTML-escaped.
"""

from __future__ import annotations

from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

_env = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
)

VERIFY_SUBJECT = "Verify your email address."
RESET_SUBJECT = "Reset your password."


def render_verify_email(url: str, name: str = "") -> str:
    return _env.get_template("verify_email.html").render(url=url, name=name)


def render_reset_email(url: str, name: str = "") -> str:
    return _env.get_template("reset_password.html").render(url=url, name=name)
