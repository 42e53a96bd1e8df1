"""
Email templates for KickExpert.

All templates use inline CSS for maximum email client compatibility.
Dark pitch theme with KickExpert green (#22C55E) accents.

Each template function returns (subject, html_body, text_body).
"""

from __future__ import annotations

from html import escape

from kickexpert.competition.prize_pool import ordinal

# Color constants
BG_DARK = "#0B1410"
BG_CARD = "#111C17"
BG_SURFACE = "#16241D"
GREEN = "#22C55E"
GOLD = "#FACC15"
TEXT_PRIMARY = "#F0FDF4"
TEXT_SECONDARY = "#94A3B8"
BORDER = "#1F2F27"


def _base_layout(content: str, app_name: str = "KickExpert") -> str:
    """Wrap content in the base email layout."""
    return f"""\
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{app_name}</title>
</head>
<body style="margin: 0; padding: 0; background-color: {BG_DARK}; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;">
    <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%" style="background-color: {BG_DARK};">
        <tr>
            <td align="center" style="padding: 40px 20px;">
                <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="600" style="max-width: 600px; width: 100%;">
                    <tr>
                        <td align="center" style="padding-bottom: 32px;">
                            <span style="font-size: 28px;">&#9917;</span>
                            <span style="font-size: 22px; font-weight: 700; color: {TEXT_PRIMARY}; margin-left: 8px;">{app_name}</span>
                        </td>
                    </tr>
                    <tr>
                        <td style="background-color: {BG_CARD}; border: 1px solid {BORDER}; border-radius: 12px; padding: 40px 32px;">
                            {content}
                        </td>
                    </tr>
                    <tr>
                        <td align="center" style="padding-top: 32px;">
                            <p style="color: {TEXT_SECONDARY}; font-size: 12px; line-height: 1.5; margin: 0;">
                                You received this email because you played a {app_name} competition.
                            </p>
                        </td>
                    </tr>
                </table>
            </td>
        </tr>
    </table>
</body>
</html>"""


def _button(url: str, label: str) -> str:
    """Render a green CTA button."""
    return f"""\
<table role="presentation" cellspacing="0" cellpadding="0" border="0" style="margin: 28px auto;">
    <tr>
        <td align="center" style="background-color: {GREEN}; border-radius: 8px;">
            <a href="{url}" target="_blank" style="display: inline-block; padding: 14px 32px; color: #FFFFFF; font-size: 16px; font-weight: 600; text-decoration: none; border-radius: 8px;">
                {label}
            </a>
        </td>
    </tr>
</table>"""


def _stat(label: str, value: str) -> str:
    return f"""\
<td align="center" style="padding: 12px; background-color: {BG_SURFACE}; border: 1px solid {BORDER}; border-radius: 8px;">
    <div style="color: {TEXT_PRIMARY}; font-size: 20px; font-weight: 700;">{value}</div>
    <div style="color: {TEXT_SECONDARY}; font-size: 12px; margin-top: 4px;">{label}</div>
</td>"""


def competition_results(
    name: str | None,
    competition_name: str,
    rank: int,
    total_players: int,
    score: int,
    total_questions: int,
    xp_awarded: int,
    prize_amount: int,
    trophy_awarded: bool,
    results_url: str,
) -> tuple[str, str, str]:
    """
    Final standing for one participant, sent after a competition is finalized.

    Returns:
        (subject, html_body, text_body)
    """
    player = escape(name or "KickExpert Player")
    comp = escape(competition_name or "your competition")
    place = ordinal(rank)
    accuracy = round(score / total_questions * 100) if total_questions > 0 else 0

    if trophy_awarded:
        subject = f"You finished {place} in {competition_name}!"
        headline = f"You finished {place}!"
    else:
        subject = f"Your results for {competition_name}"
        headline = "Your competition results"

    prize_block = ""
    prize_text = ""
    if prize_amount > 0:
        prize_block = f"""\
<div style="background-color: {BG_SURFACE}; border: 1px solid {GOLD}; border-radius: 8px; padding: 16px; margin: 24px 0;">
    <p style="color: {GOLD}; font-size: 16px; font-weight: 600; margin: 0;">
        +{prize_amount} credits have been added to your winnings balance.
    </p>
</div>"""
        prize_text = f"+{prize_amount} credits have been added to your winnings balance.\n\n"

    content = f"""\
<h1 style="color: {TEXT_PRIMARY}; font-size: 24px; font-weight: 700; margin: 0 0 16px 0;">{headline}</h1>
<p style="color: {TEXT_SECONDARY}; font-size: 16px; line-height: 1.6; margin: 0 0 8px 0;">Hi {player},</p>
<p style="color: {TEXT_SECONDARY}; font-size: 16px; line-height: 1.6; margin: 0 0 24px 0;">
    <strong style="color: {TEXT_PRIMARY};">{comp}</strong> has ended. You ranked
    <strong style="color: {GREEN};">{place}</strong> out of {total_players} players.
</p>
<table role="presentation" cellspacing="8" cellpadding="0" border="0" width="100%">
    <tr>
        {_stat("Score", f"{score}/{total_questions}")}
        {_stat("Accuracy", f"{accuracy}%")}
        {_stat("XP earned", f"+{xp_awarded}")}
    </tr>
</table>
{prize_block}
{_button(results_url, "View Full Results")}"""
    html_body = _base_layout(content)
    text_body = (
        f"Hi {name or 'KickExpert Player'},\n\n"
        f"{competition_name} has ended. You ranked {place} out of {total_players} players.\n\n"
        f"Score: {score}/{total_questions} ({accuracy}%)\n"
        f"XP earned: +{xp_awarded}\n\n"
        f"{prize_text}"
        f"See the full leaderboard: {results_url}\n\n"
        f"-- The KickExpert Team"
    )
    return subject, html_body, text_body
