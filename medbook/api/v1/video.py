from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...api.deps import get_actor, get_video_client
from ...schemas.appointment import AppointmentResponse, VideoJoinResponse
from ...services.actors import Actor
from ...services.video_service import VideoClient, VideoSessionService

router = APIRouter(prefix="/video", tags=["Video"])

@router.post("/room/{appointment_id}", response_model=VideoJoinResponse)
def join_video_room(
    appointment_id: int,
    db: Session = Depends(get_db),
    video: VideoClient = Depends(get_video_client),
    actor: Actor = Depends(get_actor)
):
    """Room URL and a meeting token for the patient or the doctor."""
    return VideoSessionService(db, video).join(appointment_id, actor)

@router.post("/end/{appointment_id}", response_model=AppointmentResponse)
def end_video_session(
    appointment_id: int,
    db: Session = Depends(get_db),
    video: VideoClient = Depends(get_video_client),
    actor: Actor = Depends(get_actor)
):
    appointment = VideoSessionService(db, video).end(appointment_id, actor)
    return AppointmentResponse.model_validate(appointment)
