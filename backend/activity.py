# activity.py — Append-only board activity log
import logging
from typing import Optional, Dict, Any, Union

from sqlalchemy.exc import SQLAlchemyError

import database
from models import Activity, ActivityAction

logger = logging.getLogger("kanban-portal.activity")


async def log_activity(
    board_id: str,
    user_id: Optional[str],
    action: Union[ActivityAction, str],
    entity_type: str,
    entity_id: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """Record a board mutation on its own session.

    Called after the mutation has committed. A failure here is logged and
    swallowed so the caller's request still succeeds.
    """
    action_value = action.value if isinstance(action, ActivityAction) else action
    try:
        async with database.get_db_context() as session:
            session.add(Activity(
                board_id=board_id,
                user_id=user_id,
                action=action_value,
                entity_type=entity_type,
                entity_id=entity_id,
                extra_data=metadata,
            ))
    except SQLAlchemyError as e:
        logger.warning(f"Activity {action_value} for board {board_id[:8]} not recorded: {e}")
