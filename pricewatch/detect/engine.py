"""Alert evaluation engine."""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.db.models import AlertHistory, AlertRule
from pricewatch.detect.rules import PriceObservation, check_rule
from pricewatch.metrics import alert_evaluation_errors_total, record_alert_triggered

logger = logging.getLogger(__name__)


class AlertEngine:
    """
    Evaluates a tracked item's active alert rules against a new observation.

    Each rule is loaded, checked and written in its own session so that a
    failure on one rule leaves the others untouched.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def evaluate(
        self,
        item_id: int,
        observation: PriceObservation,
        now: Optional[datetime] = None,
    ) -> list[int]:
        """
        Evaluate all active rules for an item.

        Args:
            item_id: Tracked item id
            observation: New price plus the item state before the update
            now: Trigger timestamp (defaults to utcnow)

        Returns:
            Ids of the rules that fired
        """
        now = now or datetime.utcnow()

        async with self.session_factory() as session:
            result = await session.execute(
                select(AlertRule.id).where(
                    AlertRule.item_id == item_id,
                    AlertRule.is_active == True,  # noqa: E712
                ).order_by(AlertRule.id)
            )
            rule_ids = list(result.scalars().all())

        fired: list[int] = []
        for rule_id in rule_ids:
            try:
                if await self._evaluate_rule(rule_id, observation, now):
                    fired.append(rule_id)
            except Exception as e:
                alert_evaluation_errors_total.inc()
                logger.error(f"Error evaluating alert {rule_id} for item {item_id}: {e}", exc_info=True)

        if fired:
            logger.info(f"Item {item_id}: {len(fired)} alert(s) triggered")
        return fired

    async def _evaluate_rule(
        self,
        rule_id: int,
        observation: PriceObservation,
        now: datetime,
    ) -> bool:
        async with self.session_factory() as session:
            rule = await session.get(AlertRule, rule_id)
            if rule is None or not rule.is_active:
                return False

            problem = rule.target_error()
            if problem:
                logger.warning(f"Skipping misconfigured alert {rule.id}: {problem}")
                return False

            triggered, reason = check_rule(
                rule.kind,
                observation,
                target_price=rule.target_price,
                target_percentage=rule.target_percentage,
            )
            if not triggered:
                return False

            session.add(
                AlertHistory(
                    alert_id=rule.id,
                    user_id=rule.user_id,
                    item_id=rule.item_id,
                    old_price=rule.last_triggered_price,
                    new_price=observation.price,
                    triggered_at=now,
                )
            )

            rule.is_triggered = True
            rule.trigger_count += 1
            rule.last_triggered_at = now
            rule.last_triggered_price = observation.price
            if rule.notify_once:
                rule.is_active = False

            await session.commit()

            record_alert_triggered(rule.kind)
            logger.info(f"Alert {rule.id} ({rule.kind}) triggered for item {rule.item_id}: {reason}")
            return True
