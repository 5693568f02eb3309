"""
Unit tests for serving.workflow_api endpoints.
"""
import json

import pytest
from fastapi.testclient import TestClient

from api.dependencies import get_llm_client, get_prompt_service, get_registry
from core.exceptions import GenerationError
from core.models import ErrorKind
from data.database import set_db_manager
from serving.session_manager import BatchSessionRegistry
from serving.workflow_api import app
from services.llm import BaseLLMClient
from services.prompt_service import PromptService

HEADERS = {'X-User-Id': 'u1'}


class FakeLLMClient(BaseLLMClient):
    """
    Answers recognition calls (with images) with a structured problem and
    generation calls with plain markdown. Variation prompts get a JSON problem
    and prompts containing FAIL fail once.
    """

    def __init__(self):
        super().__init__(model="fake")
        self.failed = set()

    async def chat_completion_with_finish_reason(self, prompt, system=None, images=None,
                                                 chat_history=None, model=None, **kwargs):
        if images:
            return json.dumps({'problemType': 'free-response', 'problemBody': 'Solve for x.'}), 'finished'
        if '[Base problem]' in prompt:
            return json.dumps({'problem': 'Solve 2x=6.', 'explanation': 'Divide by 2.'}), 'finished'
        if 'FAIL' in prompt and prompt not in self.failed:
            self.failed.add(prompt)
            raise GenerationError(ErrorKind.OTHER, "model error")
        return 'Step one. Step two.', 'finished'


@pytest.fixture
def client(db_manager):
    set_db_manager(db_manager)
    registry = BatchSessionRegistry()
    llm = FakeLLMClient()
    app.dependency_overrides[get_llm_client] = lambda: llm
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_prompt_service] = lambda: PromptService(db_manager.session)

    yield TestClient(app)

    app.dependency_overrides.clear()
    set_db_manager(None)


def upload(client, png_bytes, recognize=True):
    response = client.post(
        f"/analyze?recognize={'true' if recognize else 'false'}",
        files=[('files', ('page.png', png_bytes, 'image/png'))],
        headers=HEADERS
    )
    assert response.status_code == 200
    return response.json()


def selection(text, y_min=0.1):
    return {
        'page_number': 1,
        'bbox': {'x_min': 0.1, 'y_min': y_min, 'x_max': 0.3, 'y_max': y_min + 0.1},
        'initial_text': text
    }


def start(client, upload_id, selections, mode='fast'):
    return client.post('/batches', json={
        'upload_id': upload_id, 'mode': mode, 'selections': selections
    }, headers=HEADERS)


class TestBasics:
    """Tests for root, auth and usage endpoints."""

    def test_root(self, client):
        assert client.get('/').json()['name'] == "Haejeok Explanation API"

    def test_missing_user_header(self, client):
        assert client.get('/usage').status_code == 401

    def test_usage(self, client):
        data = client.get('/usage', headers=HEADERS).json()

        assert data['tier'] == 'basic'
        assert data['explanations']['fast'] == {'used': 0, 'limit': 5}


class TestAnalyze:
    """Tests for POST /analyze."""

    def test_detects_and_recognizes(self, client, png_bytes):
        data = upload(client, png_bytes)

        assert data['upload_id']
        assert data['total_regions'] == 2
        page = data['pages'][0]
        assert page['page_number'] == 1
        assert page['width'] == 1000
        assert [p['text'] for p in page['problems']] == ['Solve for x.', 'Solve for x.']

    def test_without_recognition(self, client, png_bytes):
        data = upload(client, png_bytes, recognize=False)

        assert len(data['pages'][0]['regions']) == 2
        assert data['pages'][0]['problems'] == []

    def test_undecodable_upload(self, client):
        response = client.post(
            '/analyze', files=[('files', ('bad.png', b'not an image', 'image/png'))], headers=HEADERS
        )

        assert response.status_code == 400


class TestBatches:
    """Tests for starting, polling and retrying batches."""

    def test_batch_completes_and_charges(self, client, png_bytes):
        upload_id = upload(client, png_bytes)['upload_id']

        response = start(client, upload_id, [selection('a'), selection('b', 0.5)])

        assert response.status_code == 200
        started = response.json()
        assert started['charged'] == 2
        assert all(r['is_loading'] for r in started['records'])

        batch = client.get(f"/batches/{started['batch_id']}", headers=HEADERS).json()
        assert batch['state'] == 'completed'
        assert batch['completed'] == 2
        assert batch['records'][0]['markdown'] == 'Step one. Step two.'
        usage = client.get('/usage', headers=HEADERS).json()
        assert usage['explanations']['fast']['used'] == 2

    def test_quota_exceeded(self, client, png_bytes):
        upload_id = upload(client, png_bytes)['upload_id']

        response = start(client, upload_id, [selection(str(i), i * 0.1) for i in range(6)])

        assert response.status_code == 429
        assert response.json()['remaining'] == 5
        usage = client.get('/usage', headers=HEADERS).json()
        assert usage['explanations']['fast']['used'] == 0

    def test_failure_refunded_then_retried_free(self, client, png_bytes):
        upload_id = upload(client, png_bytes)['upload_id']
        started = start(client, upload_id, [selection('ok'), selection('FAIL', 0.5)]).json()

        batch = client.get(f"/batches/{started['batch_id']}", headers=HEADERS).json()
        assert (batch['completed'], batch['refunded'], batch['failed']) == (1, 1, 1)
        assert client.get('/usage', headers=HEADERS).json()['explanations']['fast']['used'] == 1

        failed = next(r for r in batch['records'] if r['is_error'])
        retried = client.post(
            f"/batches/{started['batch_id']}/records/{failed['id']}/retry", headers=HEADERS
        ).json()

        assert retried['is_error'] is False
        assert retried['markdown'] == 'Step one. Step two.'
        assert client.get('/usage', headers=HEADERS).json()['explanations']['fast']['used'] == 1

    def test_unknown_upload(self, client):
        assert start(client, 'missing', [selection('a')]).status_code == 404

    def test_no_selections(self, client, png_bytes):
        upload_id = upload(client, png_bytes)['upload_id']

        assert start(client, upload_id, []).status_code == 400

    def test_unknown_batch(self, client):
        assert client.get('/batches/missing', headers=HEADERS).status_code == 404
        assert client.post('/batches/missing/cancel', headers=HEADERS).status_code == 404

    def test_other_users_batch_hidden(self, client, png_bytes):
        upload_id = upload(client, png_bytes)['upload_id']
        batch_id = start(client, upload_id, [selection('a')]).json()['batch_id']

        response = client.get(f"/batches/{batch_id}", headers={'X-User-Id': 'u2'})

        assert response.status_code == 404


class TestExportsAndQna:
    """Tests for export accounting, Q&A and variations."""

    def test_exports(self, client):
        assert client.post('/exports/pdf', headers=HEADERS).json()['remaining'] == 2
        assert client.post('/exports/hwp', headers=HEADERS).status_code == 429
        assert client.post('/exports/docx', headers=HEADERS).status_code == 400

    def test_qna(self, client):
        response = client.post('/qna', json={
            'problem_text': 'p',
            'full_explanation': 'e',
            'selected_line': 'line',
            'user_question': 'why?'
        }, headers=HEADERS)

        assert response.status_code == 200
        assert response.json()['answer'] == 'Step one. Step two.'

    def test_variation(self, client):
        response = client.post('/variations', json={
            'problem_text': 'Solve x+1=2.',
            'level': 'form',
            'core_idea': 'linear equations'
        }, headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == {
            'problem': 'Solve 2x=6.', 'explanation': 'Divide by 2.', 'level': 'form'
        }

    def test_variation_unknown_level(self, client):
        response = client.post('/variations', json={
            'problem_text': 'p', 'level': 'wild'
        }, headers=HEADERS)

        assert response.status_code == 422


class TestSets:
    """Tests for saving and managing explanation sets."""

    def test_save_list_get_delete(self, client, png_bytes):
        upload_id = upload(client, png_bytes)['upload_id']
        batch_id = start(client, upload_id, [selection('a'), selection('b', 0.5)]).json()['batch_id']

        saved = client.post('/sets', json={'batch_id': batch_id, 'title': 'Week 1'}, headers=HEADERS)
        assert saved.status_code == 200
        set_id = saved.json()['id']
        assert saved.json()['explanation_count'] == 2

        listed = client.get('/sets', headers=HEADERS).json()
        assert [s['id'] for s in listed] == [set_id]

        loaded = client.get(f"/sets/{set_id}", headers=HEADERS).json()
        explanation_id = loaded['explanations'][0]['id']
        assert client.delete(f"/explanations/{explanation_id}", headers=HEADERS).status_code == 200
        assert client.get(f"/sets/{set_id}", headers=HEADERS).json()['explanation_count'] == 1

    def test_set_of_other_user_hidden(self, client, png_bytes):
        upload_id = upload(client, png_bytes)['upload_id']
        batch_id = start(client, upload_id, [selection('a')]).json()['batch_id']
        set_id = client.post('/sets', json={'batch_id': batch_id, 'title': 'T'}, headers=HEADERS).json()['id']

        assert client.get(f"/sets/{set_id}", headers={'X-User-Id': 'u2'}).status_code == 404

    def test_save_unknown_batch(self, client):
        response = client.post('/sets', json={'batch_id': 'missing', 'title': 'T'}, headers=HEADERS)

        assert response.status_code == 404
