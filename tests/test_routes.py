from unittest.mock import MagicMock

import pytest

from .conftest import PORTAL, make_response
from .test_webhook_parser import meta_payload, text_message


@pytest.fixture
def enqueued(components):
    calls = []
    for name in list(components.queues.tasks):
        task = MagicMock()
        task.apply_async.side_effect = lambda args, task_id=None, queue=None: \
            calls.append((queue, args[0], task_id)) or MagicMock(id=task_id or 'generated-id')
        components.queues.tasks[name] = task
    return calls


# --- Meta webhook ---

def test_meta_verification_returns_challenge(client):
    response = client.get('/webhooks/meta', query_string={
        'hub.mode': 'subscribe', 'hub.verify_token': 'verify-me', 'hub.challenge': '1158201444'})
    assert response.status_code == 200
    assert response.get_data(as_text=True) == '1158201444'
    assert response.mimetype == 'text/plain'


def test_meta_verification_rejects_wrong_token(client):
    response = client.get('/webhooks/meta', query_string={
        'hub.mode': 'subscribe', 'hub.verify_token': 'nope', 'hub.challenge': '1158201444'})
    assert response.status_code == 403


def test_meta_message_is_enqueued_and_acknowledged(client, enqueued):
    response = client.post('/webhooks/meta', json=meta_payload(text_message()))

    assert response.status_code == 200
    assert response.get_json()['enqueued'] == 1
    queue, payload, task_id = enqueued[0]
    assert queue == 'inbound-relay'
    assert task_id == 'wamid.IN1'
    assert payload['channel_identity'] == '5511999990000'
    assert payload['portal_address'] == PORTAL


def test_meta_redelivery_is_acknowledged_without_second_job(client, enqueued):
    client.post('/webhooks/meta', json=meta_payload(text_message()))
    response = client.post('/webhooks/meta', json=meta_payload(text_message()))

    assert response.status_code == 200
    assert response.get_json()['duplicates'] == 1
    assert len(enqueued) == 1


def test_meta_status_update_is_ignored(client, enqueued):
    response = client.post('/webhooks/meta', json={'object': 'whatsapp_business_account', 'entry': []})
    assert response.status_code == 200
    assert response.get_json()['status'] == 'ignored'
    assert enqueued == []


def test_meta_garbage_is_acknowledged(client, enqueued):
    response = client.post('/webhooks/meta', data='not json', content_type='text/plain')
    assert response.status_code == 200
    assert enqueued == []


def test_meta_enqueue_failure_asks_for_redelivery(client, components):
    for name in list(components.queues.tasks):
        components.queues.tasks[name] = MagicMock(**{'apply_async.side_effect': ConnectionError('broker down')})
    response = client.post('/webhooks/meta', json=meta_payload(text_message()))
    assert response.status_code == 500


# --- Bitrix24 webhook ---

def test_bitrix_form_event_is_enqueued(client, enqueued):
    response = client.post('/webhooks/bitrix24/outbound', data={
        'event': 'ONIMMESSAGEADD',
        'data[PARAMS][DIALOG_ID]': 'chat42',
        'data[PARAMS][MESSAGE]': 'hi back',
        'data[PARAMS][FROM_USER_ID]': '17',
        'data[PARAMS][MESSAGE_ID]': '900',
    })

    assert response.status_code == 200
    assert response.get_json()['status'] == 'ok'
    queue, payload, task_id = enqueued[0]
    assert queue == 'outbound-relay'
    assert task_id == '900'
    assert payload['dialog_id'] == 'chat42'


def test_bitrix_json_event_is_enqueued_once(client, enqueued):
    body = {'event': 'ONIMMESSAGEADD',
            'data': {'PARAMS': {'DIALOG_ID': 'chat42', 'MESSAGE': 'hi', 'FROM_USER_ID': '17', 'MESSAGE_ID': '900'}}}
    client.post('/webhooks/bitrix24/outbound', json=body)
    response = client.post('/webhooks/bitrix24/outbound', json=body)

    assert response.get_json()['status'] == 'duplicate'
    assert len(enqueued) == 1


def test_bitrix_other_event_is_ignored(client, enqueued):
    response = client.post('/webhooks/bitrix24/outbound', json={'event': 'ONIMBOTMESSAGEADD', 'data': {}})
    assert response.status_code == 200
    assert response.get_json()['status'] == 'ignored'
    assert enqueued == []


def test_bitrix_malformed_event_is_acknowledged(client, enqueued):
    response = client.post('/webhooks/bitrix24/outbound', json={'event': 'ONIMMESSAGEADD', 'data': {}})
    assert response.status_code == 200
    assert response.get_json()['status'] == 'ignored'
    assert enqueued == []


# --- Operator API ---

def test_health_reports_dependencies(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    assert response.get_json() == {'status': 'ok', 'database_connected': True, 'redis_connected': True}


def test_metrics_are_exposed_in_prometheus_format(client):
    client.post('/webhooks/bitrix24/outbound', json={'event': 'ONIMBOTMESSAGEADD'})
    response = client.get('/api/metrics')
    assert response.status_code == 200
    assert response.content_type.startswith('text/plain')
    assert b'zaptrix_webhook_received_total{source="bitrix24",type="ignored"} 1.0' in response.data


def test_queue_stats(client):
    response = client.get('/api/queues/stats')
    assert response.status_code == 200
    assert set(response.get_json()['queues']) == {'inbound-relay', 'outbound-relay', 'channel-send', 'crm-send'}


def test_portals_require_api_key(client):
    assert client.get('/api/portals').status_code == 401
    assert client.get('/api/portals', headers={'X-API-KEY': 'wrong'}).status_code == 401


def test_portal_provisioning_and_listing(client, api_headers):
    response = client.post('/api/portals', headers=api_headers, json={
        'portal_address': 'acme.bitrix24.com',
        'client_id': 'local.acme',
        'client_secret': 'acme-secret',
        'access_token': 'acme-access',
        'refresh_token': 'acme-refresh',
        'expires_in': 3600,
    })
    assert response.status_code == 201
    assert response.get_json()['portal']['portal_address'] == 'https://acme.bitrix24.com'

    listing = client.get('/api/portals', headers=api_headers)
    assert listing.status_code == 200
    assert 'acme-secret' not in listing.get_data(as_text=True)
    assert 'acme-access' not in listing.get_data(as_text=True)
    assert listing.get_json()['portals'][0]['has_access_token'] is True


def test_duplicate_portal_is_a_conflict(client, api_headers, portal):
    response = client.post('/api/portals', headers=api_headers, json={
        'portal_address': PORTAL, 'client_id': 'x', 'client_secret': 'y'})
    assert response.status_code == 409


def test_invalid_portal_payload(client, api_headers):
    response = client.post('/api/portals', headers=api_headers, json={'portal_address': 'acme.bitrix24.com'})
    assert response.status_code == 400


def test_manual_channel_send_is_queued(client, api_headers, enqueued):
    response = client.post('/api/messages/channel', headers=api_headers,
                           json={'to': '5511999990000', 'body': 'promo'})
    assert response.status_code == 202
    assert enqueued[0][0] == 'channel-send'


def test_manual_crm_send_is_queued(client, api_headers, enqueued):
    response = client.post('/api/messages/crm', headers=api_headers, json={'chat_id': 42, 'body': 'note'})
    assert response.status_code == 202
    assert enqueued[0][0] == 'crm-send'
    assert enqueued[0][1]['chat_id'] == 42


def test_manual_send_validates_payload(client, api_headers, enqueued):
    response = client.post('/api/messages/channel', headers=api_headers, json={'to': '5511999990000'})
    assert response.status_code == 400
    assert enqueued == []


@pytest.mark.parametrize('media_type', ['image', 'video', 'document', 'audio'])
def test_media_send_is_queued_with_its_type(client, api_headers, enqueued, media_type):
    response = client.post(f'/api/messages/{media_type}', headers=api_headers,
                           json={'to': '5511999990000', 'media_url': 'https://cdn.example.com/file'})
    assert response.status_code == 202
    queue, payload, _ = enqueued[0]
    assert queue == 'channel-send'
    assert payload['type'] == media_type
    assert payload['media_url'] == 'https://cdn.example.com/file'


def test_media_send_requires_a_url(client, api_headers, enqueued):
    response = client.post('/api/messages/image', headers=api_headers, json={'to': '5511999990000'})
    assert response.status_code == 400
    assert enqueued == []


def test_template_send_is_queued(client, api_headers, enqueued):
    response = client.post('/api/messages/template', headers=api_headers, json={
        'to': '5511999990000', 'template_name': 'order_update', 'parameters': ['Ana']})
    assert response.status_code == 202
    payload = enqueued[0][1]
    assert (payload['type'], payload['template_name'], payload['parameters']) == ('template', 'order_update', ['Ana'])


def test_templates_are_listed(client, api_headers, http):
    http.add('GET', '/message_templates', make_response(200, {'data': [{'name': 'order_update'}]}))
    response = client.get('/api/messages/templates', headers=api_headers)
    assert response.status_code == 200
    assert response.get_json()['templates'] == [{'name': 'order_update'}]


def test_template_listing_outage(client, api_headers, http):
    http.add('GET', '/message_templates', make_response(503, text='unavailable'))
    response = client.get('/api/messages/templates', headers=api_headers)
    assert response.status_code == 503
