"""
Resource ownership lookup.

Resource-level decisions need the workspace that owns a board or project.
The boards/projects domain is external; anything implementing
``ResourceLocator`` can be plugged into the ``Authorizer``.
"""
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.catalog import ResourceType
from app.features.workspaces.models import Board, Project


class ResourceLocator(Protocol):
    async def resolve_workspace(
        self,
        session: AsyncSession,
        resource_type: ResourceType,
        resource_id: str,
    ) -> str | None:
        """Return the owning workspace ID, or None if the resource does not exist."""
        ...


class TableResourceLocator:
    """Looks resources up in the ``boards`` and ``projects`` tables."""

    models = {
        ResourceType.BOARD: Board,
        ResourceType.PROJECT: Project,
    }

    async def resolve_workspace(
        self,
        session: AsyncSession,
        resource_type: ResourceType,
        resource_id: str,
    ) -> str | None:
        model = self.models[ResourceType(resource_type)]
        result = await session.execute(select(model.workspace_id).where(model.id == resource_id))
        return result.scalar_one_or_none()
