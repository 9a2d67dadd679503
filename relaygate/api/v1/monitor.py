"""Connection monitor control."""
import logging

from fastapi import APIRouter, Depends, HTTPException

from relaygate.api.deps import get_connection_monitor, get_session_manager
from relaygate.core.security import get_current_user_id
from relaygate.schemas.session import MonitorAction, MonitorCommand, MonitorStatusRead
from relaygate.services.connection_monitor import ConnectionMonitor
from relaygate.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/whatsapp/monitor", tags=["whatsapp"])


@router.get("", response_model=MonitorStatusRead)
async def monitor_status(
    _: str = Depends(get_current_user_id),
    monitor: ConnectionMonitor = Depends(get_connection_monitor),
):
    return MonitorStatusRead(**monitor.status())


@router.post("", response_model=MonitorStatusRead)
async def control_monitor(
    command: MonitorCommand,
    user_id: str = Depends(get_current_user_id),
    monitor: ConnectionMonitor = Depends(get_connection_monitor),
    session_manager: SessionManager = Depends(get_session_manager),
):
    if command.action == MonitorAction.START:
        monitor.start()
    elif command.action == MonitorAction.STOP:
        await monitor.stop()
    else:
        if not command.session_id:
            raise HTTPException(status_code=400, detail="session_id is required")
        record = await session_manager.get_session_by_id(command.session_id)
        if record is None or record.user_id != user_id:
            raise HTTPException(status_code=404, detail="Session not found")
        logger.info(f"Forced reconnect of {command.session_id} requested by {user_id}")
        await monitor.force_reconnect(command.session_id)
    return MonitorStatusRead(**monitor.status())
