"""
GitHub repository operations used by the build pipeline.

The orchestrator only depends on the RepositoryHost protocol; GitHubClient is
the REST implementation. Commits go through the git data API (blobs, tree,
commit, ref update) so no working copy is needed to push. Cloning uses the
git CLI.
"""

import asyncio
import base64
import tempfile
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx

from shipyard.core.config import settings
from shipyard.core.exceptions import RepositoryError
from shipyard.core.logging_config import logger
from shipyard.core.security import UserIdentity
from shipyard.modules.overlay.virtual_fs import OverlayFile, remove_directory


INITIAL_COMMIT_MESSAGE = "Initial commit"


class RepositoryHost(Protocol):
    async def repository_exists(self, owner: str, name: str) -> bool:
        ...

    async def create_repository(self, owner: str, name: str) -> str:
        """Create a repository and return its public URL"""
        ...

    async def create_initial_commit(self, owner: str, repo: str, files: List[OverlayFile]) -> str:
        ...

    async def commit(
        self,
        owner: str,
        repo: str,
        files: List[OverlayFile],
        message: str,
        branch: str = "main",
    ) -> str:
        """Replace the branch tree with files; returns the commit sha"""
        ...

    async def clone_repository(self, owner: str, repo: str) -> Path:
        """Clone into a fresh temporary directory owned by the caller"""
        ...


async def unique_repository_name(host: RepositoryHost, owner: str, name: str) -> str:
    """name, or name-<4 hex> when the owner already has a repository called name"""
    if not await host.repository_exists(owner, name):
        return name
    candidate = f"{name}-{uuid.uuid4().hex[:4]}"
    logger.info(f"Repository {owner}/{name} exists, using {candidate}")
    return candidate


class GitHubClient:
    """RepositoryHost backed by the GitHub REST API and the git CLI"""

    def __init__(
        self,
        access_token: Optional[str],
        api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token or ""
        self.api_url = (api_url or settings.GITHUB_API_URL).rstrip("/")
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            transport=self._transport,
            timeout=httpx.Timeout(60.0),
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Accept": "application/vnd.github.v3+json",
            },
        )

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        operation: str,
        **kwargs
    ) -> Dict[str, Any]:
        try:
            response = await client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"[GitHub] {operation} failed: {e.response.status_code} {e.response.text[:200]}")
            raise RepositoryError(
                f"GitHub {operation} failed with status {e.response.status_code}",
                operation=operation,
            )
        except httpx.HTTPError as e:
            logger.error(f"[GitHub] {operation} failed: {e}")
            raise RepositoryError(f"GitHub {operation} failed: {e}", operation=operation)
        return response.json() if response.content else {}

    async def repository_exists(self, owner: str, name: str) -> bool:
        async with self._client() as client:
            try:
                response = await client.get(f"/repos/{owner}/{name}")
            except httpx.HTTPError as e:
                raise RepositoryError(f"GitHub repository lookup failed: {e}", operation="lookup")
        if response.status_code == 404:
            return False
        if response.is_success:
            return True
        raise RepositoryError(
            f"GitHub repository lookup failed with status {response.status_code}",
            operation="lookup",
        )

    async def create_repository(self, owner: str, name: str) -> str:
        # auto_init gives the repository a main branch for the first commit to build on
        async with self._client() as client:
            data = await self._request(
                client, "POST", "/user/repos", "create_repository",
                json={"name": name, "private": False, "auto_init": True},
            )
        url = data.get("html_url") or f"{settings.GITHUB_WEB_URL}/{owner}/{name}"
        logger.info(f"[GitHub] Created repository {url}")
        return url

    async def create_initial_commit(self, owner: str, repo: str, files: List[OverlayFile]) -> str:
        return await self.commit(owner, repo, files, INITIAL_COMMIT_MESSAGE, settings.GITHUB_DEFAULT_BRANCH)

    async def commit(
        self,
        owner: str,
        repo: str,
        files: List[OverlayFile],
        message: str,
        branch: str = "main",
    ) -> str:
        base = f"/repos/{owner}/{repo}/git"

        async with self._client() as client:
            tree = []
            for item in files:
                blob = await self._request(
                    client, "POST", f"{base}/blobs", "create_blob",
                    json={"content": base64.b64encode(item.contents).decode("ascii"), "encoding": "base64"},
                )
                tree.append({"path": item.path, "mode": "100644", "type": "blob", "sha": blob["sha"]})

            ref = await self._request(client, "GET", f"{base}/ref/heads/{branch}", "get_ref")
            parent_sha = ref["object"]["sha"]

            # no base_tree: the listing is the complete tree, so deleted files drop out
            new_tree = await self._request(client, "POST", f"{base}/trees", "create_tree", json={"tree": tree})

            new_commit = await self._request(
                client, "POST", f"{base}/commits", "create_commit",
                json={"message": message, "tree": new_tree["sha"], "parents": [parent_sha]},
            )

            await self._request(
                client, "PATCH", f"{base}/refs/heads/{branch}", "update_ref",
                json={"sha": new_commit["sha"]},
            )

        logger.info(f"[GitHub] Committed {len(files)} files to {owner}/{repo}@{branch}: {new_commit['sha'][:7]}")
        return new_commit["sha"]

    async def clone_repository(self, owner: str, repo: str) -> Path:
        target = Path(tempfile.mkdtemp(prefix=f"shipyard-clone-{repo}-"))
        web = settings.GITHUB_WEB_URL.split("://", 1)
        url = f"{web[0]}://x-access-token:{self.access_token}@{web[1]}/{owner}/{repo}.git"

        process = await asyncio.create_subprocess_exec(
            "git", "clone", "--depth", "1", url, str(target),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        _, stderr = await process.communicate()

        if process.returncode != 0:
            await remove_directory(target)
            stderr_text = stderr.decode("utf-8", errors="replace") if stderr else ""
            stderr_text = stderr_text.replace(self.access_token, "***") if self.access_token else stderr_text
            logger.error(f"[GitHub] Clone of {owner}/{repo} failed: {stderr_text.strip()}")
            raise RepositoryError(f"Failed to clone {owner}/{repo}", operation="clone")

        logger.info(f"[GitHub] Cloned {owner}/{repo} into {target}")
        return target


RepositoryHostFactory = Callable[[UserIdentity], RepositoryHost]


def github_client_for(user: UserIdentity) -> RepositoryHost:
    """Repositories are created and committed with the caller's own GitHub token"""
    return GitHubClient(user.github_access_token)


def get_repository_host_factory() -> RepositoryHostFactory:
    """FastAPI dependency"""
    return github_client_for
