import asyncio
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stable_automation.config.settings import settings
from stable_automation.db.models import (
    ActivityInstance,
    ActivityInstanceStatus,
    AssignmentMode,
    Horse,
    HorseStatus,
    RecurringActivity,
    RecurringActivityException,
    RecurringActivityStatus,
)
from stable_automation.db.session import AsyncSessionLocal
from stable_automation.services.recurrence.assignment import AssignmentResolver
from stable_automation.services.recurrence.exceptions import (
    OccurrenceDefaults,
    build_exception_map,
    resolve_occurrence,
)
from stable_automation.services.recurrence.expansion import expand_dates
from stable_automation.services.recurrence.holidays import (
    effective_weight,
    is_holiday_or_weekend,
)
from stable_automation.services.recurrence.rule_parser import parse_recurrence_rule
from stable_automation.utils.datetime_utils import (
    calculate_end_time,
    local_today,
    to_naive_utc,
    utc_now,
)
from stable_automation.utils.errors import BatchWriteError, DatabaseError
from stable_automation.utils.logging import get_logger


@dataclass
class DefinitionResult:
    generated: int = 0
    skipped: int = 0
    error: bool = False


async def materialize_recurring_activities(
    session_factory=AsyncSessionLocal,
    request_id: str = "app",
    now: Optional[datetime] = None,
    concurrency: Optional[int] = None,
    batch_size: Optional[int] = None,
) -> Dict[str, int]:
    """
    Materialize every active recurring activity into dated activity instances.

    Definitions are independent and processed concurrently, bounded by
    ``concurrency``, each in its own session. A failure inside one definition
    is logged and counted; only a failure to list the definitions propagates.

    Returns:
        Dict with ``processed``, ``generated``, ``skipped`` and ``errors`` totals
    """
    logger = get_logger().bind(request_id=request_id)
    now = now or utc_now()
    today = local_today(now)
    concurrency = concurrency or settings.MATERIALIZER_CONCURRENCY
    batch_size = batch_size or settings.MATERIALIZER_BATCH_SIZE

    try:
        async with session_factory() as db_session:
            definition_ids = await _get_active_definition_ids(db_session)
    except SQLAlchemyError as e:
        raise DatabaseError(f"Failed to list active recurring activities: {str(e)}")

    logger.info(
        "Found active recurring activities",
        count=len(definition_ids),
        today=today.isoformat(),
    )

    semaphore = asyncio.Semaphore(concurrency)

    async def _bounded(definition_id: str) -> DefinitionResult:
        async with semaphore:
            return await _materialize_definition(
                session_factory, definition_id, today, now, batch_size, request_id
            )

    results = await asyncio.gather(*(_bounded(i) for i in definition_ids))

    totals = {
        "processed": sum(1 for r in results if not r.error),
        "generated": sum(r.generated for r in results),
        "skipped": sum(r.skipped for r in results),
        "errors": sum(1 for r in results if r.error),
    }

    logger.info("Activity instance generation complete", **totals)
    return totals


async def _materialize_definition(
    session_factory,
    definition_id: str,
    today: date,
    now: datetime,
    batch_size: int,
    request_id: str,
) -> DefinitionResult:
    """Generate the missing instances of one definition inside its window."""
    logger = get_logger().bind(
        request_id=request_id, recurring_activity_id=definition_id
    )
    result = DefinitionResult()

    async with session_factory() as db_session:
        try:
            definition = await db_session.get(RecurringActivity, definition_id)
            if (
                definition is None
                or definition.status != RecurringActivityStatus.ACTIVE
            ):
                return result

            days_ahead = (
                definition.generate_days_ahead or settings.DEFAULT_GENERATE_DAYS_AHEAD
            )
            window_end = today + timedelta(days=days_ahead - 1)

            rule = parse_recurrence_rule(definition.recurrence_rule)
            dates = expand_dates(
                today,
                window_end,
                rule,
                definition.start_date,
                definition.end_date,
            )

            exceptions = await _get_exceptions(
                db_session, definition_id, today, window_end
            )
            exception_map = build_exception_map(exceptions, today, window_end)
            existing_dates = await _get_existing_instance_dates(
                db_session, definition_id, today, window_end
            )
            horses = await _get_checklist_horses(db_session, definition)

            resolver = AssignmentResolver.for_definition(definition)
            defaults = OccurrenceDefaults(
                title=definition.title, scheduled_time=definition.time_of_day
            )
            created_at = to_naive_utc(now)

            batch: List[ActivityInstance] = []
            for occurrence_date in dates:
                if occurrence_date.isoformat() in existing_dates:
                    result.skipped += 1
                    continue

                occurrence = resolve_occurrence(
                    occurrence_date, exception_map, defaults
                )
                if occurrence is None:
                    result.skipped += 1
                    continue

                # The rotation advances even when an exception overrides the assignee
                assignee = resolver.next_assignee()
                if occurrence.assignee_override:
                    assignee = occurrence.assignee_override

                is_holiday_shift = is_holiday_or_weekend(occurrence_date)

                batch.append(
                    ActivityInstance(
                        id=str(uuid.uuid4()),
                        recurring_activity_id=definition.id,
                        stable_id=definition.stable_id,
                        organization_id=definition.organization_id,
                        title=occurrence.title,
                        description=definition.description,
                        category=definition.category,
                        color=definition.color,
                        icon=definition.icon,
                        scheduled_date=occurrence_date,
                        scheduled_time=occurrence.scheduled_time,
                        scheduled_end_time=calculate_end_time(
                            occurrence.scheduled_time, definition.duration
                        ),
                        duration=definition.duration,
                        assigned_to=assignee,
                        assigned_at=created_at if assignee else None,
                        assigned_by="system",
                        horse_id=definition.horse_id,
                        applies_to_all_horses=definition.applies_to_all_horses,
                        horse_group_id=definition.horse_group_id,
                        checklist=_build_checklist(horses),
                        progress=_initial_progress(horses),
                        status=ActivityInstanceStatus.SCHEDULED,
                        is_exception=occurrence.is_exception,
                        exception_note=occurrence.exception_note,
                        weight=effective_weight(
                            definition.weight,
                            is_holiday_shift,
                            definition.is_holiday_multiplied,
                        ),
                        is_holiday_shift=is_holiday_shift,
                        created_by="system",
                    )
                )

                if len(batch) >= batch_size:
                    _stage_progress(definition, resolver, len(batch))
                    await _commit_batch(db_session, batch, result.generated)
                    result.generated += len(batch)
                    logger.debug(
                        "Committed batch of activity instances",
                        committed=len(batch),
                    )
                    batch = []

            if batch:
                _stage_progress(definition, resolver, len(batch))
                await _commit_batch(db_session, batch, result.generated)
                result.generated += len(batch)
                logger.debug(
                    "Committed final batch of activity instances",
                    committed=len(batch),
                )

            definition.last_generated_date = created_at
            await db_session.commit()

            logger.info(
                "Processed recurring activity",
                generated=result.generated,
                skipped=result.skipped,
            )
            return result

        except BatchWriteError as e:
            result.error = True
            logger.error(
                "Failed to commit batch of activity instances",
                committed=e.committed_count,
                error=e.message,
            )
            return result

        except Exception as e:
            await db_session.rollback()
            result.error = True
            logger.error(
                "Error processing recurring activity",
                error=str(e),
                exc_info=True,
            )
            return result


def _stage_progress(
    definition: RecurringActivity, resolver: AssignmentResolver, batch_count: int
):
    """Counters that must commit in the same transaction as the batch."""
    definition.instance_count = (definition.instance_count or 0) + batch_count
    if definition.assignment_mode == AssignmentMode.ROTATION:
        definition.current_rotation_index = resolver.rotation_index


async def _commit_batch(
    db_session: AsyncSession, batch: List[ActivityInstance], committed_count: int
):
    """Commit one batch; the definition is abandoned if it fails."""
    try:
        db_session.add_all(batch)
        await db_session.commit()
    except SQLAlchemyError as e:
        await db_session.rollback()
        raise BatchWriteError(
            f"Batch of {len(batch)} instances failed: {str(e)}",
            committed_count=committed_count,
        )


async def _get_active_definition_ids(db_session: AsyncSession) -> List[str]:
    result = await db_session.execute(
        select(RecurringActivity.id)
        .where(RecurringActivity.status == RecurringActivityStatus.ACTIVE)
        .order_by(RecurringActivity.created_at)
    )
    return list(result.scalars().all())


async def _get_exceptions(
    db_session: AsyncSession, definition_id: str, window_start: date, window_end: date
) -> List[RecurringActivityException]:
    result = await db_session.execute(
        select(RecurringActivityException).where(
            and_(
                RecurringActivityException.recurring_activity_id == definition_id,
                RecurringActivityException.exception_date >= window_start,
                RecurringActivityException.exception_date <= window_end,
            )
        )
    )
    return list(result.scalars().all())


async def _get_existing_instance_dates(
    db_session: AsyncSession, definition_id: str, window_start: date, window_end: date
) -> Set[str]:
    """ISO dates that already have a materialized instance."""
    result = await db_session.execute(
        select(ActivityInstance.scheduled_date).where(
            and_(
                ActivityInstance.recurring_activity_id == definition_id,
                ActivityInstance.scheduled_date >= window_start,
                ActivityInstance.scheduled_date <= window_end,
            )
        )
    )
    return {scheduled_date.isoformat() for scheduled_date in result.scalars().all()}


async def _get_checklist_horses(
    db_session: AsyncSession, definition: RecurringActivity
) -> List[Horse]:
    """Horse roster for the checklist, fetched once per definition."""
    if definition.applies_to_all_horses:
        condition = Horse.current_stable_id == definition.stable_id
    elif definition.horse_group_id:
        condition = Horse.horse_group_id == definition.horse_group_id
    else:
        return []

    result = await db_session.execute(
        select(Horse)
        .where(and_(condition, Horse.status == HorseStatus.ACTIVE))
        .order_by(Horse.name)
    )
    return list(result.scalars().all())


def _build_checklist(horses: List[Horse]) -> Optional[List[Dict[str, Any]]]:
    if not horses:
        return None
    return [
        {
            "id": str(uuid.uuid4()),
            "text": horse.name,
            "entity_type": "horse",
            "entity_id": horse.id,
            "completed": False,
            "order": index,
        }
        for index, horse in enumerate(horses)
    ]


def _initial_progress(horses: List[Horse]) -> Dict[str, Any]:
    if horses:
        return {
            "value": 0,
            "source": "calculated",
            "display_text": f"0 of {len(horses)}",
        }
    return {"value": 0, "source": "manual"}
