import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from housing_ledger.core.money import money
from housing_ledger.exceptions import InvalidEntryError, ResidenceNotFoundError, StudentNotFoundError
from housing_ledger.models import Residence, Room, Student
from housing_ledger.schemas import ResidenceCreate, StudentCreate

logger = logging.getLogger(__name__)


class ResidenceService:
    """
    Residences, their room price table, and the students allocated to them.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_residence(self, residence_id: str) -> Residence:
        query = select(Residence).options(selectinload(Residence.rooms)).where(Residence.id == residence_id)
        result = await self.db.execute(query)
        residence = result.scalar_one_or_none()
        if not residence:
            raise ResidenceNotFoundError(residence_id)
        return residence

    async def create_residence(self, residence_in: ResidenceCreate) -> Residence:
        residence = Residence(
            id=residence_in.id,
            name=residence_in.name,
            admin_fee=money(residence_in.admin_fee),
            rooms=[
                Room(name=room.name, price=money(room.price) if room.price is not None else None)
                for room in residence_in.rooms
            ],
        )
        self.db.add(residence)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise InvalidEntryError(
                f"Residence '{residence_in.id}' already exists",
                context={"residence_id": residence_in.id},
            )
        logger.info(f"Created residence {residence_in.id} with {len(residence_in.rooms)} rooms")
        return await self.get_residence(residence_in.id)

    async def get_student(self, student_id: str) -> Student:
        student = await self.db.get(Student, student_id)
        if not student:
            raise StudentNotFoundError(student_id)
        return student

    async def create_student(self, student_in: StudentCreate) -> Student:
        if student_in.residence_id:
            await self.get_residence(student_in.residence_id)
        if student_in.lease_start and student_in.lease_end and student_in.lease_end < student_in.lease_start:
            raise InvalidEntryError(
                f"Lease of student {student_in.id} ends ({student_in.lease_end}) before it starts ({student_in.lease_start})",
                context={"student_id": student_in.id},
            )

        student = Student(**student_in.model_dump())
        self.db.add(student)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise InvalidEntryError(
                f"Student '{student_in.id}' already exists",
                context={"student_id": student_in.id},
            )
        logger.info(f"Registered student {student.id} in {student.residence_id} room {student.room_name}")
        return student
