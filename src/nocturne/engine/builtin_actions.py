"""Actions every agent gets: CONTINUE, IGNORE and NONE."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from nocturne.engine.actions import Action
from nocturne.engine.actions import ActionContext
from nocturne.engine.actions import ActionResponse
from nocturne.engine.actions import normalize_action_name

logger = logging.getLogger(__name__)

CONTINUE = "CONTINUE"
IGNORE = "IGNORE"
NONE = "NONE"


async def trailing_action_streak(
    ctx: ActionContext,
    action: str,
    limit: int,
    *,
    across_user_turns: bool = False,
) -> int:
    """Count the newest agent messages in the room that completed *action*.

    The count stops at the first message that is not such a response, so
    any user message resets it. With *across_user_turns*, user messages
    are skipped and only another agent response ends the run. The result
    never exceeds *limit*.
    """
    if ctx.store is None or limit <= 0:
        return 0
    key = normalize_action_name(action)
    room_id = ctx.message.room_id
    window = await ctx.store.count(room_id) if across_user_turns else limit
    streak = 0
    for record in await ctx.store.list(room_id, window):
        if record.user_id != ctx.message.agent_id:
            if across_user_turns:
                continue
            break
        if normalize_action_name(record.content.action) != key:
            break
        streak += 1
        if streak >= limit:
            break
    return streak


def continue_action(
    max_consecutive: int = 3, *, across_user_turns: bool = False
) -> Action:
    """Let the agent keep talking, at most *max_consecutive* times in a row.

    By default a user message starts a fresh run; with *across_user_turns*
    only a different agent response does.
    """

    async def validate(ctx: ActionContext) -> bool:
        streak = await trailing_action_streak(
            ctx, CONTINUE, max_consecutive, across_user_turns=across_user_turns
        )
        if streak >= max_consecutive:
            logger.info(
                "CONTINUE capped room=%s streak=%d", ctx.message.room_id, streak
            )
            return False
        return True

    async def handler(ctx: ActionContext) -> AsyncIterator[ActionResponse]:
        follow_on = getattr(ctx.runtime, "continue_conversation", None)
        if follow_on is None:
            return
        draft = await follow_on(ctx.message)
        if draft.action:
            ctx.enqueue_followup(draft.text, action=draft.action)
        elif draft.text:
            yield ActionResponse(text=draft.text)

    return Action(
        name=CONTINUE,
        description=(
            "Keep talking without waiting for a reply, when the thought is "
            "unfinished. Use sparingly."
        ),
        handler=handler,
        validate=validate,
        similes=("ELABORATE", "KEEP_TALKING"),
    )


def ignore_action() -> Action:
    """Stay silent, for when the conversation is over or hostile."""

    async def handler(ctx: ActionContext) -> None:
        logger.debug("ignoring message %s", ctx.message.id)

    return Action(
        name=IGNORE,
        description="Say nothing; the conversation has ended or should not continue.",
        handler=handler,
        similes=("STOP_TALKING", "STAY_SILENT"),
        suppress_initial_message=True,
    )


def none_action() -> Action:
    """Explicitly take no action beyond replying."""

    async def handler(ctx: ActionContext) -> None:
        del ctx

    return Action(
        name=NONE,
        description="Reply normally without any further action.",
        handler=handler,
        similes=("NO_ACTION", "RESPOND"),
    )


def default_actions(
    max_continuations: int = 3, *, continue_across_user_turns: bool = False
) -> list[Action]:
    """CONTINUE, IGNORE and NONE, in matching order."""
    return [
        continue_action(max_continuations, across_user_turns=continue_across_user_turns),
        ignore_action(),
        none_action(),
    ]
