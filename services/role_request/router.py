"""
services/role_request/router.py
Users applying for the scholar or admin role. Review happens under /admin.
"""

from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.role_request import workflow
from shared.middleware.auth import get_current_user
from shared.models.models import RequestedRole, User
from shared.schemas.schemas import RoleRequestCreate, RoleRequestResponse

router = APIRouter(prefix="/role-requests", tags=["Role Requests"])


@router.post("", response_model=RoleRequestResponse, status_code=status.HTTP_201_CREATED)
async def submit_role_request(
    body: RoleRequestCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    request = await workflow.submit_role_request(
        db,
        current_user,
        RequestedRole(body.requested_role),
        qualifications=body.qualifications,
        institution=body.institution,
        experience=body.experience,
    )
    return RoleRequestResponse.model_validate(request)


@router.get("/mine", response_model=List[RoleRequestResponse])
async def my_role_requests(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    requests = await workflow.list_my_role_requests(db, current_user)
    return [RoleRequestResponse.model_validate(r) for r in requests]
