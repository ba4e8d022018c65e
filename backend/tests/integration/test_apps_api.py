"""
Integration Tests for the apps, logs and health endpoints
"""
import pytest

from shipyard.core.config import settings
from shipyard.core.security import UserIdentity, create_access_token
from shipyard.models.prompt import PromptKind
from shipyard.services.conversation_cache import ConversationSnapshot
from shipyard.services.usage_guardrail import utc_day_start


pytestmark = pytest.mark.integration

APPS_URL = '/api/v1/apps'

TURNS = [
    (PromptKind.USER, 'Build a todo app'),
    (PromptKind.ASSISTANT, 'I created a todo app'),
    (PromptKind.USER, 'Add due dates'),
]


class TestListApps:
    """GET /apps"""

    async def test_lists_own_live_apps(self, client, auth_headers, test_user, create_application):
        mine = await create_application(test_user)
        await create_application(test_user, deleted_at=mine.created_at)
        await create_application(UserIdentity(user_id='someone-else'))

        response = await client.get(APPS_URL, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert [app['id'] for app in data['data']] == [mine.id]
        assert data['data'][0]['ownerId'] == test_user.user_id
        assert data['data'][0]['deployStatus'] == 'pending'
        assert data['pagination'] == {'total': 1, 'page': 1, 'limit': 10, 'totalPages': 1}

    async def test_pagination(self, client, auth_headers, test_user, create_application):
        created = {(await create_application(test_user)).id for _ in range(3)}

        first = (await client.get(APPS_URL, params={'page': 1, 'limit': 2}, headers=auth_headers)).json()
        second = (await client.get(APPS_URL, params={'page': 2, 'limit': 2}, headers=auth_headers)).json()

        assert len(first['data']) == 2
        assert len(second['data']) == 1
        assert first['pagination']['totalPages'] == 2
        assert {app['id'] for app in first['data'] + second['data']} == created

    async def test_usage_headers_are_not_reserved(self, client, auth_headers, test_user, create_application):
        await create_application(
            test_user,
            turns=[(PromptKind.USER, 'one'), (PromptKind.USER, 'two')],
            created_at=utc_day_start(),
        )

        response = await client.get(APPS_URL, headers=auth_headers)

        assert response.headers['x-dailylimit-usage'] == '2'
        assert response.headers['x-dailylimit-remaining'] == str(settings.DAILY_MESSAGE_LIMIT - 2)

    async def test_requires_auth(self, client):
        response = await client.get(APPS_URL)
        assert response.status_code == 401


class TestAppDetail:
    """GET /apps/{id} and /apps/{id}/history"""

    async def test_detail_with_history(self, client, auth_headers, test_user, create_application):
        application = await create_application(test_user, turns=TURNS)

        response = await client.get(f'{APPS_URL}/{application.id}', headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data['appName'] == application.app_name
        assert [(p['kind'], p['prompt']) for p in data['history']] == [
            (kind.value, text) for kind, text in TURNS
        ]
        assert data['history'][0]['appId'] == application.id

    async def test_history(self, client, auth_headers, test_user, create_application):
        application = await create_application(test_user, turns=TURNS)

        response = await client.get(f'{APPS_URL}/{application.id}/history', headers=auth_headers)

        assert response.status_code == 200
        assert [p['prompt'] for p in response.json()] == [text for _, text in TURNS]

    async def test_empty_history(self, client, auth_headers, test_user, create_application):
        application = await create_application(test_user)

        response = await client.get(f'{APPS_URL}/{application.id}/history', headers=auth_headers)

        assert response.status_code == 404
        assert response.json()['error']['code'] == 'PREVIOUS_REQUEST_NOT_FOUND'

    async def test_other_users_app(self, client, auth_headers, create_application):
        application = await create_application(UserIdentity(user_id='someone-else'), turns=TURNS)

        response = await client.get(f'{APPS_URL}/{application.id}', headers=auth_headers)

        assert response.status_code == 404
        assert response.json()['error']['code'] == 'APPLICATION_NOT_FOUND'


class TestDeleteApp:
    """DELETE /apps/{id}"""

    async def test_soft_delete(self, client, auth_headers, test_user, create_application, conversation_cache):
        application = await create_application(test_user, turns=TURNS)
        await conversation_cache.set(application.trace_id, ConversationSnapshot(last_event={}))

        response = await client.delete(f'{APPS_URL}/{application.id}', headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {'success': True, 'id': application.id}
        assert await conversation_cache.get(application.trace_id) is None

        followup = await client.get(f'{APPS_URL}/{application.id}', headers=auth_headers)
        assert followup.status_code == 404

    async def test_cannot_delete_others(self, client, test_user, create_application):
        application = await create_application(test_user)
        intruder = {'Authorization': f"Bearer {create_access_token({'sub': 'intruder'})}"}

        response = await client.delete(f'{APPS_URL}/{application.id}', headers=intruder)

        assert response.status_code == 404


class TestAppLogs:
    """GET /apps/{id}/logs and /apps/{id}/logs/{traceId}"""

    def write_folder(self, dev_log_store, name, content='frames'):
        folder = dev_log_store.base_dir / name
        folder.mkdir(parents=True)
        (folder / 'sse_messages.log').write_text(content)

    async def test_list_logs(self, client, auth_headers, test_user, create_application, dev_log_store):
        application = await create_application(test_user)
        self.write_folder(dev_log_store, f'app-{application.id}.req-aaaa1111_1000')
        self.write_folder(dev_log_store, f'app-{application.id}.req-bbbb2222_2000')
        self.write_folder(dev_log_store, 'app-other.req-cccc3333_3000')

        response = await client.get(f'{APPS_URL}/{application.id}/logs', headers=auth_headers)

        assert response.status_code == 200
        assert [f['requestId'] for f in response.json()['data']] == ['bbbb2222', 'aaaa1111']

    async def test_read_trace(self, client, auth_headers, test_user, create_application, dev_log_store):
        application = await create_application(test_user)
        folder = f'app-{application.id}.req-aaaa1111_1000'
        self.write_folder(dev_log_store, folder, 'data: {}')

        response = await client.get(f'{APPS_URL}/{application.id}/logs/{folder}', headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {'traceId': folder, 'files': {f'{folder}/sse_messages.log': 'data: {}'}}

    async def test_foreign_trace_denied(self, client, auth_headers, test_user, create_application, dev_log_store):
        application = await create_application(test_user)
        self.write_folder(dev_log_store, 'app-other.req-aaaa1111_1000')

        response = await client.get(
            f'{APPS_URL}/{application.id}/logs/app-other.req-aaaa1111_1000', headers=auth_headers
        )

        assert response.status_code == 403
        assert response.json()['error']['code'] == 'TRACE_ACCESS_DENIED'


class TestHealth:
    """Liveness and readiness"""

    async def test_health(self, client):
        response = await client.get('/api/v1/health')
        assert response.status_code == 200
        assert response.json()['status'] == 'healthy'

    async def test_ready(self, client):
        response = await client.get('/api/v1/health/ready')

        assert response.status_code == 200
        body = response.json()
        assert body['checks']['database']['status'] == 'healthy'
        assert body['checks']['redis']['status'] == 'skipped'
