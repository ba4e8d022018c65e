"""
Integration Tests for POST /api/v1/message

Drives the whole pipeline through the HTTP API with the agent, repository
host and deployment provider mocked at their seams:

1. New build: relay, repository creation, initial commit, deployment
2. Iteration: cached conversation, repository files sent along, commit
3. Guardrails: daily quota, app limit, concurrency ceiling
4. Failures before and after the stream starts
"""
import json

import pytest
from httpx import AsyncClient

from shipyard.core.config import settings
from shipyard.core.exceptions import RepositoryError
from shipyard.models.application import Application, DeployStatus
from shipyard.models.prompt import PromptKind
from shipyard.modules.overlay.diff_applier import EMPTY_DIFF_SENTINEL
from shipyard.modules.streaming.sse_parser import SSEFrameParser
from shipyard.services.conversation_cache import ConversationSnapshot
from shipyard.services.prompt_service import PromptService
from shipyard.services.usage_guardrail import utc_day_start

from mocks.mock_platform import agent_event, history_content


pytestmark = pytest.mark.integration

MESSAGE_URL = '/api/v1/message'
REQUEST_ID = 'a1b2c3d4'

CREATE_DIFF = """--- /dev/null
+++ b/index.ts
@@ -0,0 +1,2 @@
+export const todos = []
+export default todos
"""

ORIGINAL_INDEX = 'export const title = "Todo"\nexport default title\n'

MODIFY_DIFF = """--- a/index.ts
+++ b/index.ts
@@ -1,2 +1,2 @@
-export const title = "Todo"
+export const title = "Todo Pro"
 export default title
"""


def parse_frames(response):
    return SSEFrameParser().feed(response.text)


async def post_message(client: AsyncClient, headers: dict, body):
    return await client.post(MESSAGE_URL, json=body, headers={**headers, 'X-Request-ID': REQUEST_ID})


async def reload(db_session, application_id):
    db_session.expire_all()
    return await db_session.get(Application, application_id)


# =============================================================================
# NEW BUILD
# =============================================================================
class TestNewBuild:
    """First message without applicationId"""

    @pytest.fixture
    def build_events(self, mock_agent):
        trace = f'temp.req-{REQUEST_ID}'
        running = agent_event(trace, status='running', content='Planning the todo app')
        idle = agent_event(
            trace,
            content=history_content(('user', 'Build a todo app'), ('assistant', 'I created a todo app')),
            unified_diff=CREATE_DIFF,
            app_name='todo-app',
            commit_message='feat: scaffold todo app',
        )
        mock_agent.add_event(agent_event(trace, status='running', kind='KeepAlive'))
        mock_agent.add_event(running)
        mock_agent.add_event(idle)
        return running, idle

    async def test_full_build(
        self, client, auth_headers, test_user, db_session, mock_agent, repository_host,
        deploy_provider, session_service, build_events
    ):
        running, idle = build_events

        response = await post_message(client, auth_headers, {'message': 'Build a todo app'})

        assert response.status_code == 200
        assert response.headers['content-type'].startswith('text/event-stream')
        assert response.headers['x-request-id'] == REQUEST_ID

        app_id = mock_agent.last_body['applicationId']
        owner = test_user.github_username
        frames = parse_frames(response)

        # keep-alive dropped, agent frames relayed unchanged, then notices and done
        assert len(frames) == 5
        assert frames[0].data == json.dumps(running)
        assert frames[1].data == json.dumps(idle)
        assert frames[2].json()['message']['content'] == (
            f'Your application has been uploaded to this github repository: https://github.com/{owner}/todo-app'
        )
        assert frames[3].json()['message']['content'] == (
            f'Your application has been deployed to https://{app_id[:8]}.apps.test'
        )
        assert frames[4].is_done
        assert frames[4].json()['traceId'] == f'app-{app_id}.req-{REQUEST_ID}'

        assert repository_host.created == [f'{owner}/todo-app']
        assert repository_host.initial_commits[0]['files'] == {
            'index.ts': 'export const todos = []\nexport default todos\n'
        }
        assert deploy_provider.deployments == [{'app_id': app_id, 'files': ['index.ts']}]
        assert await session_service.get_active_session_count() == 0

    async def test_application_and_prompts_persisted(
        self, client, auth_headers, test_user, db_session, mock_agent, build_events
    ):
        await post_message(client, auth_headers, {'message': 'Build a todo app', 'clientSource': 'web'})
        app_id = mock_agent.last_body['applicationId']

        application = await reload(db_session, app_id)
        assert application.owner_id == test_user.user_id
        assert application.name == 'Build a todo app'
        assert application.trace_id == f'app-{app_id}.req-{REQUEST_ID}'
        assert application.app_name == 'todo-app'
        assert application.client_source == 'web'
        assert application.deploy_status == DeployStatus.DEPLOYED.value
        assert application.app_url == f'https://{app_id[:8]}.apps.test'

        prompts = await PromptService(db_session).get_history(app_id)
        assert [(p.kind, p.prompt) for p in prompts] == [
            (PromptKind.USER.value, 'Build a todo app'),
            (PromptKind.ASSISTANT.value, 'I created a todo app'),
        ]

    async def test_upstream_request(self, client, auth_headers, mock_agent, build_events):
        await post_message(client, auth_headers, {'message': 'Build a todo app', 'settings': {'max-iterations': 3}})

        body = mock_agent.last_body
        assert body['traceId'] == f'temp.req-{REQUEST_ID}'
        assert body['allMessages'] == [{'role': 'user', 'content': 'Build a todo app'}]
        assert body['settings'] == {'max-iterations': 3}
        assert 'allFiles' not in body
        assert mock_agent.requests[0]['headers']['authorization'] == 'Bearer test-agent-secret'

    async def test_daily_limit_headers(self, client, auth_headers, build_events):
        response = await post_message(client, auth_headers, {'message': 'Build a todo app'})

        assert response.headers['x-dailylimit-limit'] == str(settings.DAILY_MESSAGE_LIMIT)
        assert response.headers['x-dailylimit-remaining'] == str(settings.DAILY_MESSAGE_LIMIT - 1)
        assert response.headers['x-dailylimit-usage'] == '1'
        assert response.headers['x-dailylimit-reset'].endswith('+00:00')

    async def test_taken_repository_name(self, client, auth_headers, test_user, repository_host, build_events):
        repository_host.existing.add(f'{test_user.github_username}/todo-app')

        await post_message(client, auth_headers, {'message': 'Build a todo app'})

        [created] = repository_host.created
        assert created.startswith(f'{test_user.github_username}/todo-app-')

    async def test_cache_follows_promoted_trace(self, client, auth_headers, mock_agent, conversation_cache, build_events):
        await post_message(client, auth_headers, {'message': 'Build a todo app'})
        app_id = mock_agent.last_body['applicationId']

        assert await conversation_cache.get(f'temp.req-{REQUEST_ID}') is None
        snapshot = await conversation_cache.get(f'app-{app_id}.req-{REQUEST_ID}')
        assert snapshot.messages[-1] == {'role': 'assistant', 'content': 'I created a todo app'}

    async def test_dev_log_folder_promoted(self, client, auth_headers, mock_agent, dev_log_store, build_events):
        await post_message(client, auth_headers, {'message': 'Build a todo app'})
        app_id = mock_agent.last_body['applicationId']

        [folder] = list(dev_log_store.base_dir.iterdir())
        assert folder.name.startswith(f'app-{app_id}.req-{REQUEST_ID}_')
        assert (folder / 'sse_messages.log').exists()
        assert (folder / 'files.json').exists()


class TestNoChanges:
    """Final turn without a deployable diff"""

    async def test_sentinel_diff_ends_without_shipping(
        self, client, auth_headers, db_session, mock_agent, repository_host, deploy_provider
    ):
        mock_agent.add_event(agent_event(
            f'temp.req-{REQUEST_ID}',
            content=history_content(('user', 'hello'), ('assistant', 'Nothing to change')),
            unified_diff=EMPTY_DIFF_SENTINEL,
        ))

        response = await post_message(client, auth_headers, {'message': 'hello'})

        frames = parse_frames(response)
        assert len(frames) == 2
        assert frames[-1].is_done
        assert frames[-1].json()['traceId'] == f'temp.req-{REQUEST_ID}'
        assert repository_host.created == []
        assert deploy_provider.deployments == []
        assert await reload(db_session, mock_agent.last_body['applicationId']) is None

    async def test_diff_must_be_on_last_turn(self, client, auth_headers, mock_agent, repository_host):
        trace = f'temp.req-{REQUEST_ID}'
        mock_agent.add_event(agent_event(trace, status='running', content='draft', unified_diff=CREATE_DIFF))
        mock_agent.add_event(agent_event(trace, status='running', content='still thinking'))

        response = await post_message(client, auth_headers, {'message': 'hello'})

        assert parse_frames(response)[-1].is_done
        assert repository_host.created == []


# =============================================================================
# ITERATION
# =============================================================================
class TestIteration:
    """Follow-up message on an existing application"""

    CACHED = [
        {'role': 'user', 'content': 'Build a todo app'},
        {'role': 'assistant', 'content': 'I created a todo app'},
    ]

    @pytest.fixture
    async def application(self, create_application, test_user, conversation_cache, repository_host):
        application = await create_application(test_user)
        await conversation_cache.set(
            application.trace_id,
            ConversationSnapshot(last_event={}, messages=list(self.CACHED)),
        )
        repository_host.repo_files = {'index.ts': ORIGINAL_INDEX}
        return application

    def add_reply(self, mock_agent, application, diff=MODIFY_DIFF):
        mock_agent.add_event(agent_event(
            application.trace_id,
            content=history_content(
                ('user', 'Build a todo app'),
                ('assistant', 'I created a todo app'),
                ('user', 'Rename the title'),
                ('assistant', 'Renamed the title'),
            ),
            unified_diff=diff,
            commit_message='feat: rename title',
        ))

    async def test_iteration_commits_and_deploys(
        self, client, auth_headers, test_user, db_session, mock_agent, repository_host, deploy_provider, application
    ):
        self.add_reply(mock_agent, application)

        response = await post_message(
            client, auth_headers, {'message': 'Rename the title', 'applicationId': application.id}
        )

        # no prompts are stored, so a 200 shows the conversation came from the cache
        assert response.status_code == 200
        frames = parse_frames(response)
        owner = test_user.github_username
        assert frames[1].json()['message']['content'] == (
            f'committed in existing app - commit url: '
            f'https://github.com/{owner}/{application.app_name}/commit/{"b" * 40}'
        )
        assert frames[2].json()['message']['content'] == (
            f'Your application has been deployed to https://{application.id[:8]}.apps.test'
        )
        assert frames[3].is_done
        assert frames[3].json()['traceId'] == application.trace_id

        assert repository_host.clones == [f'{owner}/{application.app_name}']
        assert repository_host.commits == [{
            'repo': f'{owner}/{application.app_name}',
            'files': {'index.ts': 'export const title = "Todo Pro"\nexport default title\n'},
            'message': 'feat: rename title',
            'branch': 'main',
        }]
        assert repository_host.created == []
        assert len(deploy_provider.deployments) == 1

        row = await reload(db_session, application.id)
        assert row.deploy_status == DeployStatus.DEPLOYED.value

    async def test_upstream_gets_files_and_conversation(self, client, auth_headers, mock_agent, application):
        self.add_reply(mock_agent, application)

        await post_message(client, auth_headers, {'message': 'Rename the title', 'applicationId': application.id})

        body = mock_agent.last_body
        assert body['applicationId'] == application.id
        assert body['traceId'] == application.trace_id
        assert body['allMessages'] == self.CACHED + [{'role': 'user', 'content': 'Rename the title'}]
        assert body['allFiles'] == [{'path': 'index.ts', 'content': ORIGINAL_INDEX}]

    async def test_prompts_persisted(self, client, auth_headers, db_session, mock_agent, application):
        self.add_reply(mock_agent, application)

        await post_message(client, auth_headers, {'message': 'Rename the title', 'applicationId': application.id})

        db_session.expire_all()
        prompts = await PromptService(db_session).get_history(application.id)
        assert [(p.kind, p.prompt) for p in prompts] == [
            (PromptKind.USER.value, 'Rename the title'),
            (PromptKind.ASSISTANT.value, 'Renamed the title'),
        ]

    async def test_context_mismatch(
        self, client, auth_headers, db_session, mock_agent, repository_host, deploy_provider,
        session_service, application
    ):
        repository_host.repo_files = {'index.ts': 'export const title = "Groceries"\nexport default title\n'}
        self.add_reply(mock_agent, application)

        response = await post_message(
            client, auth_headers, {'message': 'Rename the title', 'applicationId': application.id}
        )

        assert response.status_code == 200
        frames = parse_frames(response)
        assert frames[-1].event == 'error'
        error = frames[-1].json()
        assert error['kind'] == 'DiffApplicationError'
        assert 'Hunk #1' in error['error']
        assert not any(frame.is_done for frame in frames)

        assert repository_host.commits == []
        assert deploy_provider.deployments == []
        row = await reload(db_session, application.id)
        assert row.deploy_status == DeployStatus.PENDING.value
        assert await session_service.get_active_session_count() == 0

    async def test_clone_failure_surfaces_after_relay(
        self, client, auth_headers, mock_agent, repository_host, application
    ):
        repository_host.clone_error = RepositoryError('Failed to clone', operation='clone')
        self.add_reply(mock_agent, application)

        response = await post_message(
            client, auth_headers, {'message': 'Rename the title', 'applicationId': application.id}
        )

        assert mock_agent.calls == 1
        assert 'allFiles' not in mock_agent.last_body
        frames = parse_frames(response)
        assert frames[0].json()['message']['commit_message'] == 'feat: rename title'
        assert frames[-1].event == 'error'
        assert frames[-1].json()['kind'] == 'RepositoryError'
        assert repository_host.commits == []

    async def test_history_rebuild_on_cache_miss(
        self, client, auth_headers, test_user, mock_agent, conversation_cache, create_application
    ):
        application = await create_application(test_user, turns=[
            (PromptKind.USER, 'Build a todo app'),
            (PromptKind.ASSISTANT, 'I created a todo app'),
        ])
        self.add_reply(mock_agent, application, diff=EMPTY_DIFF_SENTINEL)

        response = await post_message(
            client, auth_headers, {'message': 'Rename the title', 'applicationId': application.id}
        )

        assert response.status_code == 200
        assert mock_agent.last_body['allMessages'] == self.CACHED + [{'role': 'user', 'content': 'Rename the title'}]


# =============================================================================
# GUARDRAILS
# =============================================================================
class TestGuardrails:
    """Rejected before the agent is called"""

    async def test_daily_quota_exhausted(self, client, auth_headers, test_user, mock_agent, create_application):
        await create_application(
            test_user,
            turns=[(PromptKind.USER, f'message {i}') for i in range(settings.DAILY_MESSAGE_LIMIT)],
            created_at=utc_day_start(),
        )

        response = await post_message(client, auth_headers, {'message': 'one more'})

        assert response.status_code == 429
        assert response.json()['error']['code'] == 'DAILY_LIMIT_EXCEEDED'
        assert response.headers['x-dailylimit-remaining'] == '0'
        assert response.headers['x-dailylimit-usage'] == str(settings.DAILY_MESSAGE_LIMIT)
        assert mock_agent.calls == 0

    async def test_apps_limit(self, client, auth_headers, test_user, mock_agent, create_application, monkeypatch):
        monkeypatch.setattr(settings, 'USER_APPS_LIMIT', 1)
        await create_application(test_user)

        response = await post_message(client, auth_headers, {'message': 'Build another app'})

        assert response.status_code == 429
        assert response.json()['error']['code'] == 'APPS_LIMIT_EXCEEDED'
        assert mock_agent.calls == 0

    async def test_concurrency_ceiling(self, client, auth_headers, mock_agent, session_service):
        session_service.max_connections = 1
        await session_service.create_or_refresh_session(user_id='someone', trace_id='temp.req-00000000')

        response = await post_message(client, auth_headers, {'message': 'Build a todo app'})

        assert response.status_code == 429
        assert response.json()['error']['code'] == 'TOO_MANY_CONNECTIONS'
        assert 'x-dailylimit-limit' in response.headers
        assert mock_agent.calls == 0


# =============================================================================
# REQUEST ERRORS
# =============================================================================
class TestRequestErrors:
    """Plain JSON errors before the stream starts"""

    async def test_requires_auth(self, client, mock_agent):
        response = await client.post(MESSAGE_URL, json={'message': 'hi'})
        assert response.status_code == 401
        assert mock_agent.calls == 0

    @pytest.mark.parametrize('body', [{}, {'message': ''}, {'message': '   '}])
    async def test_invalid_message(self, client, auth_headers, body):
        response = await post_message(client, auth_headers, body)

        assert response.status_code == 400
        error = response.json()['error']
        assert error['code'] == 'VALIDATION_ERROR'
        assert error['details']['field'] == 'message'

    async def test_non_object_body(self, client, auth_headers):
        response = await post_message(client, auth_headers, ['message'])
        assert response.status_code == 400

    async def test_unknown_application(self, client, auth_headers, mock_agent):
        response = await post_message(client, auth_headers, {'message': 'hi', 'applicationId': 'nope'})

        assert response.status_code == 404
        assert response.json()['error']['code'] == 'APPLICATION_NOT_FOUND'
        assert mock_agent.calls == 0

    async def test_application_without_history(self, client, auth_headers, test_user, create_application):
        application = await create_application(test_user)

        response = await post_message(client, auth_headers, {'message': 'hi', 'applicationId': application.id})

        assert response.status_code == 404
        assert response.json()['error']['code'] == 'PREVIOUS_REQUEST_NOT_FOUND'

    async def test_upstream_error_passthrough(self, client, auth_headers, mock_agent, session_service):
        mock_agent.status_code = 503
        mock_agent.error_payload = {'error': 'agent overloaded'}

        response = await post_message(client, auth_headers, {'message': 'Build a todo app'})

        assert response.status_code == 503
        error = response.json()['error']
        assert error['code'] == 'UPSTREAM_AGENT_ERROR'
        assert error['upstream'] == {'error': 'agent overloaded'}
        assert response.headers['x-dailylimit-limit'] == str(settings.DAILY_MESSAGE_LIMIT)
        assert await session_service.get_active_session_count() == 0
