from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query

from app.models import GroupAddMemberRequest, GroupCreateRequest, GroupJoinRequest, GroupView
from app.services.group_store import group_directory
from app.services.notification_store import notification_store

router = APIRouter(prefix="/groups", tags=["groups"])


@router.get("", response_model=List[GroupView])
def list_groups(user_id: Optional[str] = Query(default=None)):
    return group_directory.list_visible(user_id)


@router.post("", response_model=GroupView)
def create_group(payload: GroupCreateRequest):
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail="Group name is required")
    group = group_directory.create(owner_user_id=payload.user_id, name=payload.name, is_private=payload.is_private)
    return group_directory.view(group, payload.user_id)


@router.post("/{group_id}/join", response_model=GroupView)
def join_group(group_id: str, payload: GroupJoinRequest):
    group = group_directory.get(group_id)
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")
    status = group_directory.join(group_id, payload.user_id)
    if status == "pending" and group.owner_user_id != payload.user_id:
        notification_store.create(
            user_id=group.owner_user_id,
            title="New group join request",
            body=f"{payload.user_id} requested to join {group.name}",
            category="group",
            deep_link=f"group:{group.id}",
        )
    return group_directory.view(group, payload.user_id)


@router.post("/{group_id}/members", response_model=GroupView)
def add_member(group_id: str, payload: GroupAddMemberRequest):
    group = group_directory.get(group_id)
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")
    if group.owner_user_id != payload.requester_user_id:
        raise HTTPException(status_code=403, detail="Only group owner can add members")
    group_directory.add_member(group_id, payload.member_user_id)
    notification_store.create(
        user_id=payload.member_user_id,
        title="Added to group",
        body=f"You are now a member of {group.name}",
        category="group",
        deep_link=f"group:{group.id}",
    )
    return group_directory.view(group, payload.requester_user_id)
