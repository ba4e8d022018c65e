"""
Deployment Trigger
==================
Ships a materialized build directory to the hosting provider.

deploy_status transitions:

    pending/deployed/failed --(conditional UPDATE)--> deploying
    deploying --> deployed (app_url set) | failed

The move to `deploying` is a single conditional UPDATE, so two requests for
the same application cannot both start a deployment.
"""

import asyncio
import io
import tarfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Protocol, Union

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.core.config import settings
from shipyard.core.database import AsyncSessionLocal
from shipyard.core.exceptions import (
    ApplicationNotFoundError,
    DeploymentConflictError,
    DeploymentError,
)
from shipyard.core.logging_config import logger
from shipyard.models.application import Application, DeployStatus
from shipyard.modules.overlay.virtual_fs import remove_directory


class DeploymentProvider(Protocol):
    async def deploy_directory(self, app_id: str, path: Path) -> str:
        """Deploy the directory and return the public URL"""
        ...


def build_archive(directory: Path) -> bytes:
    """gzip'd tarball of directory, paths relative to its root"""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for file_path in sorted(directory.rglob("*")):
            if file_path.is_file():
                tar.add(file_path, arcname=file_path.relative_to(directory).as_posix())
    return buffer.getvalue()


class HttpDeploymentProvider:
    """Uploads a tar.gz of the build to the deploy service"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.DEPLOY_SERVICE_URL).rstrip("/")
        self.token = token if token is not None else settings.DEPLOY_SERVICE_TOKEN
        self._transport = transport

    async def deploy_directory(self, app_id: str, path: Path) -> str:
        archive = await asyncio.get_running_loop().run_in_executor(None, build_archive, Path(path))
        logger.info(f"[Deploy] Uploading {len(archive)} bytes for app {app_id}")

        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(settings.DEPLOY_TIMEOUT),
        ) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/deployments",
                    data={"applicationId": app_id},
                    files={"archive": (f"{app_id}.tar.gz", archive, "application/gzip")},
                    headers={"Authorization": f"Bearer {self.token}"},
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise DeploymentError(
                    f"Deploy service responded with status {e.response.status_code}",
                    application_id=app_id,
                )
            except httpx.HTTPError as e:
                raise DeploymentError(f"Deploy service unreachable: {e}", application_id=app_id)

        data = response.json()
        app_url = data.get("appUrl") or data.get("url")
        if not app_url:
            raise DeploymentError("Deploy service returned no URL", application_id=app_id)
        return app_url


@dataclass
class DeployResult:
    app_url: str


class DeploymentTrigger:
    """Owns the build directory handed to deploy() and removes it afterwards"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        provider: Optional[DeploymentProvider] = None,
    ):
        self.session_factory = session_factory
        self.provider = provider or HttpDeploymentProvider()

    async def deploy(self, application_id: str, directory: Union[str, Path]) -> DeployResult:
        directory = Path(directory)
        try:
            await self._claim(application_id)

            try:
                app_url = await self.provider.deploy_directory(application_id, directory)
            except (Exception, asyncio.CancelledError) as e:
                logger.error(f"[Deploy] Deployment of {application_id} failed: {type(e).__name__}: {e}")
                # a cancelled request must not leave the row at deploying
                await asyncio.shield(self._set_status(application_id, DeployStatus.FAILED))
                raise

            await self._set_status(application_id, DeployStatus.DEPLOYED, app_url=app_url)
            logger.info(f"[Deploy] {application_id} deployed to {app_url}")
            return DeployResult(app_url=app_url)
        finally:
            if not settings.is_dev_mode():
                await asyncio.shield(remove_directory(directory))

    async def _claim(self, application_id: str) -> None:
        """pending/deployed/failed -> deploying in one statement"""
        async with self.session_factory() as db:
            result = await db.execute(
                update(Application)
                .where(
                    Application.id == application_id,
                    Application.deploy_status != DeployStatus.DEPLOYING.value,
                )
                .values(deploy_status=DeployStatus.DEPLOYING.value, updated_at=datetime.utcnow())
            )
            await db.commit()
            if result.rowcount == 1:
                return

            exists = await db.execute(select(Application.id).where(Application.id == application_id))
            if exists.scalar_one_or_none() is None:
                raise ApplicationNotFoundError(application_id)

        logger.warning(f"[Deploy] {application_id} is already deploying")
        raise DeploymentConflictError(application_id)

    async def _set_status(self, application_id: str, status: DeployStatus, app_url: Optional[str] = None) -> None:
        values = {"deploy_status": status.value, "updated_at": datetime.utcnow()}
        if app_url:
            values["app_url"] = app_url
        async with self.session_factory() as db:
            await db.execute(update(Application).where(Application.id == application_id).values(**values))
            await db.commit()


def get_deployment_trigger() -> DeploymentTrigger:
    """FastAPI dependency"""
    return DeploymentTrigger()
