import logging

from sqlalchemy import func, literal_column, update
from sqlalchemy.orm import Session

from ..core.exceptions import InvalidRequest, NotFound
from ..models.doctor import Doctor

logger = logging.getLogger(__name__)


class RatingService:
    def __init__(self, db: Session):
        self.db = db

    def record_rating(self, doctor_id: int, score: int) -> None:
        """
        Fold one score into the doctor's aggregate with a single UPDATE.

        The running integer sum keeps the average independent of the order in
        which concurrent ratings land. Does not commit.
        """
        if not isinstance(score, int) or not 1 <= score <= 5:
            raise InvalidRequest("Rating must be between 1 and 5")

        # "1.0" keeps the division fractional on both SQLite and PostgreSQL
        new_average = func.round(
            (Doctor.rating_sum + score) * literal_column("1.0") / (Doctor.rating_count + 1),
            1,
        )
        result = self.db.execute(
            update(Doctor)
            .where(Doctor.id == doctor_id)
            .values(
                rating_sum=Doctor.rating_sum + score,
                rating_count=Doctor.rating_count + 1,
                rating_average=new_average,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFound("Doctor not found")

        logger.info(f"Doctor {doctor_id} received rating {score}")
