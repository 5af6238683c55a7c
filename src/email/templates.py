from __future__ import annotations

from datetime import datetime
from html import escape

from pydantic import BaseModel

from src.handlers.summary import VotingSummary
from src.models.ballot import BallotRead, VoteChoice
from src.models.user import Recipient

NO_COMMENT = "No comment provided"
SUBJECT_TITLE_LIMIT = 50
DASHBOARD_PATHS = {"resolution": "resolutions", "minutes": "minutes"}

REASON_LABELS = {
    "all_voted": "All eligible members voted",
    "deadline_expired": "Voting deadline expired",
    "manual_completion": "Voting closed by an administrator",
}
CHOICE_LABELS = {
    VoteChoice.APPROVE: "Approve",
    VoteChoice.REJECT: "Reject",
    VoteChoice.ABSTAIN: "Abstain",
}
CHOICE_COLORS = {
    VoteChoice.APPROVE: "#047857",
    VoteChoice.REJECT: "#b91c1c",
    VoteChoice.ABSTAIN: "#6b7280",
}
PAST_TENSE = {
    VoteChoice.APPROVE: "approved",
    VoteChoice.REJECT: "rejected",
    VoteChoice.ABSTAIN: "abstained on",
}


class RenderedEmail(BaseModel):
    subject: str
    html: str
    text: str


def _format_ts(ts: datetime | None) -> str:
    if ts is None:
        return "-"
    return ts.strftime("%Y-%m-%d %H:%M UTC")


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."


def build_subject(summary: VotingSummary) -> str:
    label = summary.item.item_type.capitalize()
    verdict = "PASSED" if summary.outcome.passed else "FAILED"
    title = _truncate(summary.item.title, SUBJECT_TITLE_LIMIT)
    return f"{label} Voting Complete: {title} - {verdict}"


def participation_note(summary: VotingSummary, recipient: Recipient) -> tuple[str, str | None]:
    """Personal line for the recipient: what they voted, or a nudge if they did not."""
    ballot = summary.ballot_for(recipient.user_id)
    if ballot is not None:
        message = f"Thank you for participating in this vote. You {PAST_TENSE[ballot.choice]} this item."
        note = "Your comment is included in the record below." if ballot.has_comment else None
        return message, note
    if recipient.role in ("board_member", "admin"):
        return (
            "You did not participate in this vote.",
            "Your participation in future votes is important for effective board governance.",
        )
    return "Thank you for your participation in board governance.", None


def _ballot_comment(ballot: BallotRead) -> str:
    return ballot.comment.strip() if ballot.has_comment and ballot.comment else NO_COMMENT


def _ballot_rows_html(ballots: list[BallotRead]) -> str:
    rows = []
    for ballot in ballots:
        position = (
            f'<br><small style="color:#6b7280;">{escape(ballot.voter_position)}</small>'
            if ballot.voter_position
            else ""
        )
        rows.append(
            f"""\
        <tr>
          <td style="padding:8px;border-bottom:1px solid #e5e7eb;"><strong>{escape(ballot.voter_name)}</strong>{position}</td>
          <td style="padding:8px;border-bottom:1px solid #e5e7eb;color:{CHOICE_COLORS[ballot.choice]};font-weight:600;">{CHOICE_LABELS[ballot.choice]}</td>
          <td style="padding:8px;border-bottom:1px solid #e5e7eb;color:#4b5563;"><em>{escape(_ballot_comment(ballot))}</em></td>
          <td style="padding:8px;border-bottom:1px solid #e5e7eb;color:#6b7280;">{_format_ts(ballot.cast_at)}</td>
        </tr>"""
        )
    if not rows:
        rows.append(
            '        <tr><td colspan="4" style="padding:8px;color:#6b7280;">No ballots were cast.</td></tr>'
        )
    return "\n".join(rows)


def _consensus_line(summary: VotingSummary) -> str:
    outcome = summary.outcome
    if outcome.is_unanimous and outcome.unanimous_choice is not None:
        return f"Unanimous {CHOICE_LABELS[outcome.unanimous_choice].lower()} vote"
    return f"{outcome.consensus_level.capitalize()} consensus level"


def _build_html(summary: VotingSummary, recipient: Recipient, dashboard_url: str) -> str:
    item = summary.item
    outcome = summary.outcome
    verdict = "PASSED" if outcome.passed else "FAILED"
    banner_color = "#047857" if outcome.passed else "#b91c1c"
    reason_label = REASON_LABELS.get(item.completion_reason or "", "Voting concluded")
    message, note = participation_note(summary, recipient)
    note_html = f'<p style="margin:8px 0 0;font-size:13px;color:#6b7280;">{escape(note)}</p>' if note else ""

    non_voters_html = ""
    if summary.non_voters:
        names = ", ".join(escape(member.full_name) for member in summary.non_voters)
        non_voters_html = f"""\
      <h3 style="margin:24px 0 8px;font-size:16px;color:#92400e;">Members Who Did Not Vote ({len(summary.non_voters)})</h3>
      <p style="margin:0;font-size:14px;color:#4b5563;">{names}</p>"""

    return f"""\
<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"></head>
<body style="margin:0;padding:0;background-color:#f4f4f5;font-family:system-ui,-apple-system,sans-serif;">
  <table width="100%" cellpadding="0" cellspacing="0" style="padding:40px 20px;">
    <tr><td align="center">
      <table width="640" cellpadding="0" cellspacing="0"
        style="background:#ffffff;border-radius:12px;padding:32px;max-width:640px;">
        <tr><td>
      <h1 style="margin:0 0 8px;font-size:22px;color:#111827;">{escape(item.item_type.capitalize())} Voting Complete</h1>
      <h2 style="margin:0 0 16px;font-size:18px;color:#374151;">{escape(item.title)}</h2>
      <div style="padding:16px;border-radius:8px;background:{banner_color};color:#ffffff;">
        <strong style="font-size:18px;">{verdict}</strong>
        <p style="margin:4px 0 0;font-size:14px;">{escape(outcome.passed_reason)}</p>
        <p style="margin:4px 0 0;font-size:13px;">{escape(reason_label)} on {_format_ts(item.completed_at)}</p>
      </div>
      <p style="margin:16px 0 0;font-size:15px;color:#111827;">Dear {escape(recipient.full_name)},</p>
      <p style="margin:8px 0 0;font-size:15px;color:#111827;">{escape(message)}</p>
      {note_html}
      <h3 style="margin:24px 0 8px;font-size:16px;color:#111827;">Results</h3>
      <p style="margin:0;font-size:14px;line-height:1.6;color:#4b5563;">
        Total votes cast: {outcome.total_votes} of {outcome.total_eligible_voters} eligible voters ({outcome.participation_rate}% participation)<br>
        Approve: {outcome.approve_votes} ({outcome.approval_percentage}%)<br>
        Reject: {outcome.reject_votes} ({outcome.rejection_percentage}%)<br>
        Abstain: {outcome.abstain_votes} ({outcome.abstention_percentage}%)<br>
        Quorum {"was met" if outcome.quorum_met else "was NOT met"} ({outcome.minimum_quorum:g}% required)<br>
        {escape(_consensus_line(summary))}<br>
        {outcome.comment_count} member{"" if outcome.comment_count == 1 else "s"} provided comments ({outcome.comment_rate}% comment rate)
      </p>
      <h3 style="margin:24px 0 8px;font-size:16px;color:#111827;">Individual Votes</h3>
      <table width="100%" cellpadding="0" cellspacing="0" style="font-size:14px;border-collapse:collapse;">
        <tr>
          <th align="left" style="padding:8px;border-bottom:2px solid #e5e7eb;">Member</th>
          <th align="left" style="padding:8px;border-bottom:2px solid #e5e7eb;">Vote</th>
          <th align="left" style="padding:8px;border-bottom:2px solid #e5e7eb;">Comment</th>
          <th align="left" style="padding:8px;border-bottom:2px solid #e5e7eb;">Cast</th>
        </tr>
{_ballot_rows_html(summary.ballots)}
      </table>
{non_voters_html}
      <p style="margin:32px 0 0;text-align:center;">
        <a href="{escape(dashboard_url, quote=True)}"
           style="display:inline-block;padding:12px 32px;background-color:#6366f1;color:#ffffff;
                  text-decoration:none;border-radius:8px;font-size:15px;font-weight:600;">
          View on the board portal
        </a>
      </p>
        </td></tr>
      </table>
    </td></tr>
  </table>
</body>
</html>"""


def _build_plain_text(summary: VotingSummary, recipient: Recipient, dashboard_url: str) -> str:
    item = summary.item
    outcome = summary.outcome
    message, note = participation_note(summary, recipient)
    lines = [
        f"{item.item_type.capitalize()} Voting Complete: {item.title}",
        "",
        f"Dear {recipient.full_name},",
        message,
    ]
    if note:
        lines.append(note)
    lines += [
        "",
        f"RESULT: {'PASSED' if outcome.passed else 'FAILED'} - {outcome.passed_reason}",
        f"{REASON_LABELS.get(item.completion_reason or '', 'Voting concluded')} on {_format_ts(item.completed_at)}",
        "",
        f"Total Votes Cast: {outcome.total_votes} of {outcome.total_eligible_voters} eligible voters",
        f"Participation Rate: {outcome.participation_rate}%",
        f"Approve: {outcome.approve_votes} ({outcome.approval_percentage}%)",
        f"Reject: {outcome.reject_votes} ({outcome.rejection_percentage}%)",
        f"Abstain: {outcome.abstain_votes} ({outcome.abstention_percentage}%)",
        f"Quorum: {'MET' if outcome.quorum_met else 'NOT MET'} ({outcome.minimum_quorum:g}% required)",
        f"Consensus: {_consensus_line(summary)}",
        "",
        "INDIVIDUAL VOTES",
    ]
    if not summary.ballots:
        lines.append("No ballots were cast.")
    for ballot in summary.ballots:
        position = f" ({ballot.voter_position})" if ballot.voter_position else ""
        lines.append(
            f"- {ballot.voter_name}{position}: {CHOICE_LABELS[ballot.choice].upper()} "
            f"at {_format_ts(ballot.cast_at)}"
        )
        lines.append(f"  Comment: {_ballot_comment(ballot)}")
    if summary.non_voters:
        lines += ["", f"MEMBERS WHO DID NOT VOTE ({len(summary.non_voters)})"]
        lines += [f"- {member.full_name}" for member in summary.non_voters]
    lines += ["", f"View on the board portal: {dashboard_url}"]
    return "\n".join(lines)


def build_summary_email(
    summary: VotingSummary,
    recipient: Recipient,
    *,
    app_public_base_url: str,
) -> RenderedEmail:
    dashboard_url = f"{app_public_base_url}/{DASHBOARD_PATHS[summary.item.item_type]}/{summary.item.id}"
    return RenderedEmail(
        subject=build_subject(summary),
        html=_build_html(summary, recipient, dashboard_url),
        text=_build_plain_text(summary, recipient, dashboard_url),
    )
