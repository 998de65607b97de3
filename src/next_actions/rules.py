"""Built-in next-action rules."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Mapping

from memory.effectiveness import RuleEffectiveness
from next_actions.context import NextActionContext, ProposalSnapshot
from next_actions.registry import CandidateBatch, RuleDescriptor, RuleRegistry

PRIORITY_BASE = {"critical": 90, "high": 75, "medium": 55, "low": 30}
STALE_PROPOSAL_DAYS = 7
GROWTH_SCOPE = ("founder_growth",)


def _count_boost(count: int, factor: int = 1) -> int:
    return min(10, count * factor)


def _counted(base: str, attribute: str, factor: int = 1):
    def score(context: NextActionContext, _item: Any) -> float:
        return PRIORITY_BASE[base] + _count_boost(getattr(context, attribute), factor)

    return score


def _stale_proposals(context: NextActionContext) -> list[ProposalSnapshot]:
    cutoff = context.now - timedelta(days=STALE_PROPOSAL_DAYS)
    stale = [
        proposal
        for proposal in context.proposals
        if proposal.sent_at is not None
        and proposal.last_followup_at is None
        and proposal.sent_at < cutoff
    ]
    return sorted(stale, key=lambda proposal: proposal.proposal_id)


def _days_since_sent(context: NextActionContext, proposal: ProposalSnapshot) -> int:
    return (context.now - proposal.sent_at).days


def _stale_proposal_score(context: NextActionContext, proposal: ProposalSnapshot) -> float:
    overdue = _days_since_sent(context, proposal) - STALE_PROPOSAL_DAYS
    return 70 + min(15, max(0, overdue))


def _stale_proposal_reason(context: NextActionContext, proposal: ProposalSnapshot) -> str:
    return f"Proposal sent {_days_since_sent(context, proposal)} days ago with no follow-up"


def _stale_proposal_title(_context: NextActionContext, proposal: ProposalSnapshot) -> str:
    if proposal.title:
        return f"Follow up on proposal: {proposal.title}"
    return "Follow up on stale proposal"


DEFAULT_RULES: tuple[RuleDescriptor, ...] = (
    RuleDescriptor(
        key="score_in_critical_band",
        title="Investigate top score reasons",
        predicate=lambda ctx: ctx.command_center_band == "critical",
        score_fn=lambda ctx, _item: PRIORITY_BASE["critical"] + 5,
        reason_fn=lambda ctx, _item: "Command center score in critical band",
        action_url="/dashboard/internal/scoreboard",
        payload_fn=lambda ctx, _item: {"entity_type": "command_center"},
        steps=(
            "Review top negative score factors",
            "Check recent score events for sharp drops",
        ),
    ),
    RuleDescriptor(
        key="failed_notification_deliveries",
        title="Retry failed deliveries",
        predicate=lambda ctx: ctx.failed_delivery_count > 0,
        score_fn=_counted("high", "failed_delivery_count"),
        reason_fn=lambda ctx, _item: f"{ctx.failed_delivery_count} delivery attempt(s) failed",
        action_url="/dashboard/notifications?filter=failed",
        payload_fn=lambda ctx, _item: {"action": "retry_failed"},
        steps=("Filter notifications by failed", "Check channel configuration and retry"),
    ),
    RuleDescriptor(
        key="overdue_reminders_high_priority",
        title="Clear overdue reminders",
        predicate=lambda ctx: ctx.overdue_reminders_count > 0,
        score_fn=_counted("medium", "overdue_reminders_count"),
        reason_fn=lambda ctx, _item: f"{ctx.overdue_reminders_count} reminder(s) overdue",
        action_url="/dashboard/reminders?bucket=overdue",
        payload_fn=lambda ctx, _item: {"bucket": "overdue"},
    ),
    RuleDescriptor(
        key="proposals_sent_no_followup_date",
        title="Schedule follow-up dates",
        predicate=lambda ctx: ctx.sent_no_followup_date_count > 0,
        score_fn=_counted("medium", "sent_no_followup_date_count"),
        reason_fn=lambda ctx, _item: (
            f"{ctx.sent_no_followup_date_count} proposal(s) need follow-up date"
        ),
        action_url="/dashboard/proposal-followups?bucket=no_followup",
        payload_fn=lambda ctx, _item: {"bucket": "no_followup"},
    ),
    RuleDescriptor(
        key="proposal_stale_followup",
        title="Follow up on stale proposal",
        predicate=lambda ctx: bool(ctx.proposals),
        items_fn=_stale_proposals,
        item_id_fn=lambda proposal: proposal.proposal_id,
        score_fn=_stale_proposal_score,
        reason_fn=_stale_proposal_reason,
        title_fn=_stale_proposal_title,
        action_url="/dashboard/proposal-followups?bucket=overdue",
        payload_fn=lambda ctx, proposal: {"proposal_id": proposal.proposal_id},
        steps=("Send a follow-up message", "Record the follow-up on the proposal"),
    ),
    RuleDescriptor(
        key="retention_overdue",
        title="Contact retention clients",
        predicate=lambda ctx: ctx.retention_overdue_count > 0,
        score_fn=lambda ctx, _item: (
            PRIORITY_BASE["high" if ctx.retention_overdue_count >= 3 else "medium"]
            + _count_boost(ctx.retention_overdue_count)
        ),
        reason_fn=lambda ctx, _item: f"{ctx.retention_overdue_count} retention task(s) overdue",
        action_url="/dashboard/retention?bucket=overdue",
        payload_fn=lambda ctx, _item: {"bucket": "overdue"},
    ),
    RuleDescriptor(
        key="handoff_no_client_confirm",
        title="Request client confirmation",
        predicate=lambda ctx: ctx.handoff_no_client_confirm_count > 0,
        score_fn=_counted("medium", "handoff_no_client_confirm_count"),
        reason_fn=lambda ctx, _item: (
            f"{ctx.handoff_no_client_confirm_count} handoff(s) awaiting client confirm"
        ),
        action_url="/dashboard/handoffs?bucket=awaiting_confirm",
        payload_fn=lambda ctx, _item: {"bucket": "awaiting_confirm"},
    ),
    RuleDescriptor(
        key="flywheel_won_no_delivery",
        title="Create delivery projects for won deals",
        predicate=lambda ctx: ctx.won_no_delivery_count > 0,
        score_fn=_counted("high", "won_no_delivery_count", factor=3),
        reason_fn=lambda ctx, _item: (
            f"{ctx.won_no_delivery_count} won deal(s) have no delivery project"
        ),
        action_url="/dashboard/delivery/new",
        payload_fn=lambda ctx, _item: {"gap": "won_no_delivery"},
    ),
    RuleDescriptor(
        key="flywheel_referral_gap",
        title="Ask for referrals on won deals",
        predicate=lambda ctx: ctx.referral_gap_count > 0,
        score_fn=_counted("medium", "referral_gap_count", factor=2),
        reason_fn=lambda ctx, _item: (
            f"{ctx.referral_gap_count} won deal(s) without a referral request"
        ),
        action_url="/dashboard/leads",
        payload_fn=lambda ctx, _item: {"gap": "referral_not_asked"},
    ),
    RuleDescriptor(
        key="flywheel_stage_stall",
        title="Re-engage stalled leads",
        predicate=lambda ctx: ctx.stage_stall_count > 0,
        score_fn=lambda ctx, _item: (
            PRIORITY_BASE["high" if ctx.stage_stall_count >= 3 else "medium"]
            + _count_boost(ctx.stage_stall_count, 2)
        ),
        reason_fn=lambda ctx, _item: (
            f"{ctx.stage_stall_count} active lead(s) with no contact 10+ days"
        ),
        action_url="/dashboard/leads",
        payload_fn=lambda ctx, _item: {"gap": "stage_stall"},
    ),
    RuleDescriptor(
        key="growth_overdue_followups",
        title="Follow up on growth pipeline",
        scopes=GROWTH_SCOPE,
        predicate=lambda ctx: ctx.growth_overdue_count > 0,
        score_fn=lambda ctx, _item: (
            PRIORITY_BASE["high" if ctx.growth_overdue_count >= 3 else "medium"]
            + _count_boost(ctx.growth_overdue_count)
        ),
        reason_fn=lambda ctx, _item: (
            f"{ctx.growth_overdue_count} deal(s) with overdue follow-up"
        ),
        action_url="/dashboard/growth",
        payload_fn=lambda ctx, _item: {
            "bucket": "overdue",
            "deal_id": ctx.growth_first_overdue_deal_id,
        },
    ),
    RuleDescriptor(
        key="growth_no_outreach_sent",
        title="Send outreach to new prospects",
        scopes=GROWTH_SCOPE,
        predicate=lambda ctx: ctx.growth_no_outreach_count > 0,
        score_fn=_counted("medium", "growth_no_outreach_count"),
        reason_fn=lambda ctx, _item: (
            f"{ctx.growth_no_outreach_count} new deal(s) with no outreach sent"
        ),
        action_url="/dashboard/growth",
        payload_fn=lambda ctx, _item: {
            "bucket": "no_outreach",
            "deal_id": ctx.growth_first_no_outreach_deal_id,
        },
    ),
)


def build_default_registry() -> RuleRegistry:
    """Return a fresh registry holding the built-in rules."""
    return RuleRegistry(DEFAULT_RULES)


DEFAULT_REGISTRY = build_default_registry()


def produce_candidates(
    context: NextActionContext,
    scope: str = "command_center",
    weights: Mapping[str, float] | None = None,
    effectiveness: Mapping[str, RuleEffectiveness] | None = None,
    *,
    registry: RuleRegistry | None = None,
) -> CandidateBatch:
    """Evaluate the rules for ``scope`` against ``context``."""
    return (registry or DEFAULT_REGISTRY).produce_candidates(
        context, scope, weights, effectiveness
    )
