from html import escape

CONFIRMATION_SUBJECT = "Welcome to Lariyu! Confirm your Email"
RESEND_SUBJECT = "Your Lariyu confirmation link"

_BUTTON_STYLE = (
    "display: inline-block; padding: 12px 24px; background-color: #000; "
    "color: #fff; text-decoration: none; border-radius: 4px;"
)


def _layout(heading: str, greeting_name: str, intro: str, link: str, ttl_minutes: int) -> str:
    name = escape(greeting_name) if greeting_name else "there"
    href = escape(link, quote=True)
    return f"""
<div style="font-family: sans-serif; max-width: 600px; margin: 0 auto;">
  <h1 style="color: #333;">{heading}</h1>
  <p>Hi {name},</p>
  <p>{intro}</p>
  <a href="{href}" style="{_BUTTON_STYLE}">Verify Email</a>
  <p>Or paste this link in your browser:</p>
  <p>{escape(link)}</p>
  <p>This link will expire in {ttl_minutes} minutes.</p>
</div>
""".strip()


def render_confirmation_email(first_name: str, link: str, ttl_minutes: int) -> str:
    return _layout(
        "Welcome to Lariyu Luxury Steps!",
        first_name,
        "Thank you for signing up. Please verify your email address to continue.",
        link,
        ttl_minutes,
    )


def render_resend_email(link: str, ttl_minutes: int) -> str:
    return _layout(
        "Confirm your Lariyu account",
        "",
        "Here is a fresh link to verify your email address and sign in.",
        link,
        ttl_minutes,
    )
