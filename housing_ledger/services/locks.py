"""
Per-student mutual exclusion for read-then-post sequences.
"""
import asyncio
import weakref
from contextlib import asynccontextmanager

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from housing_ledger.exceptions import StudentNotFoundError
from housing_ledger.models import Student


class StudentLockRegistry:
    """
    One asyncio.Lock per student id, dropped once nobody holds a reference.
    """

    def __init__(self):
        self._locks = weakref.WeakValueDictionary()

    def lock_for(self, student_id: str) -> asyncio.Lock:
        lock = self._locks.get(student_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[student_id] = lock
        return lock


student_locks = StudentLockRegistry()


@asynccontextmanager
async def student_scope(db: AsyncSession, student_id: str):
    """
    Serializes work for one student: in-process through the lock registry,
    across processes through a row lock on the student (SELECT ... FOR UPDATE,
    a no-op on SQLite). Yields the locked Student. The body must commit or
    roll back before leaving the scope.
    """
    lock = student_locks.lock_for(student_id)
    async with lock:
        result = await db.execute(select(Student).where(Student.id == student_id).with_for_update())
        student = result.scalar_one_or_none()
        if not student:
            raise StudentNotFoundError(student_id)
        yield student
