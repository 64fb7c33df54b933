"""Startup seeding for the serving process.

Users and departments live in process memory, so the administrator and the
department catalogue are loaded by the process that serves requests, from
``ADMIN_*`` and ``DEPARTMENTS`` settings.
"""

from __future__ import annotations

from typing import Dict, List, Mapping

from campusauth.logging import get_logger
from campusauth.service.auth import AuthService
from campusauth.storage.memory import MemoryStore
from campusauth.storage.models import Department, Role

logger = get_logger(__name__)


def seed_departments(store: MemoryStore, departments: Mapping[str, str]) -> List[Department]:
    """Load ``{code: name}`` pairs; the code doubles as the department id."""
    seeded = [
        store.add_department(name, code=code, department_id=code)
        for code, name in departments.items()
    ]
    if seeded:
        logger.info("departments_seeded", codes=[d.code for d in seeded])
    return seeded


async def ensure_admin(
    auth: AuthService, username: str, email: str, password: str
) -> Dict[str, str]:
    """Make sure ``username`` exists with the admin role.

    Returns ``{"user_id", "status"}`` where status is ``created``,
    ``promoted`` or ``already_admin``. An existing user keeps its password.
    """
    existing = await auth.users.find_by_username(username.strip())
    if existing is None:
        user = await auth.create_admin(username, email, password)
        logger.info("admin_bootstrapped", user_id=user.id, status="created")
        return {"user_id": user.id, "status": "created"}
    if existing.role is Role.ADMIN:
        return {"user_id": existing.id, "status": "already_admin"}
    await auth.set_user_role(existing.id, Role.ADMIN)
    logger.warning("admin_bootstrapped", user_id=existing.id, status="promoted")
    return {"user_id": existing.id, "status": "promoted"}
