import threading
from unittest.mock import MagicMock

import pytest
import redis
from sqlalchemy.exc import OperationalError

from zaptrix_app.config import TestingConfig
from zaptrix_app.exceptions import MappingCreationError, TransientApiError
from zaptrix_app.schemas import ChannelSendJob, CrmSendJob, InboundMessageJob, OutboundMessageJob
from zaptrix_app.utils.lock_utils import KeyedLock

from .conftest import GRAPH_MESSAGES_URL, PORTAL, crm_method_url, make_response

IDENTITY = '5511999990000'


def graph_api(url, kwargs):
    if kwargs['json'].get('status') == 'read':
        return make_response(200, {'success': True})
    return make_response(200, {'messages': [{'id': 'wamid.OUT1'}]})


@pytest.fixture
def upstream(http, portal):
    http.add('POST', GRAPH_MESSAGES_URL, graph_api)
    http.add('POST', crm_method_url('crm.contact.list'), make_response(200, {'result': []}))
    http.add('POST', crm_method_url('crm.contact.add'), make_response(200, {'result': 501}))
    http.add('POST', crm_method_url('imconnector.send.messages'), make_response(200, {'result': {'CHAT_ID': 42}}))
    http.add('POST', crm_method_url('im.message.add'), make_response(200, {'result': 9001}))
    return http


def inbound_job(message_id='wamid.IN1', body='hello'):
    return InboundMessageJob(message_id=message_id, channel_identity=IDENTITY, contact_name='Ana',
                             body=body, portal_address=PORTAL)


def outbound_job(dialog_id='chat42', from_user_id='17', body='hi back'):
    return OutboundMessageJob(message_id='900', dialog_id=dialog_id, body=body, from_user_id=from_user_id)


def channel_sends(http):
    return [call for call in http.calls_to(GRAPH_MESSAGES_URL) if call[2]['json'].get('type') == 'text']


def test_new_contact_creates_contact_chat_mapping_and_sends(components, upstream, redis_client):
    result = components.relay.process_inbound(inbound_job())

    assert result.success is True
    assert result.status == 'relayed'
    assert result.data['mapping_created'] is True
    assert len(upstream.calls_to('crm.contact.add')) == 1
    assert len(upstream.calls_to('imconnector.send.messages')) == 1
    sends = upstream.calls_to('im.message.add')
    assert len(sends) == 1
    assert sends[0][2]['json']['DIALOG_ID'] == 'chat42'
    assert sends[0][2]['json']['MESSAGE'] == 'hello'

    mapping = components.mapper.find_by_crm_chat_id(42)
    assert mapping.channel_identity == IDENTITY
    assert mapping.crm_contact_id == 501
    assert redis_client.exists('msg:processed:wamid.IN1') == 1


def test_inbound_marks_message_as_read(components, upstream):
    components.relay.process_inbound(inbound_job())
    reads = [c for c in upstream.calls_to(GRAPH_MESSAGES_URL) if c[2]['json'].get('status') == 'read']
    assert reads[0][2]['json']['message_id'] == 'wamid.IN1'


def test_existing_contact_in_crm_is_reused(components, upstream):
    upstream.add('POST', crm_method_url('crm.contact.list'), make_response(200, {'result': [{'ID': '777'}]}))

    components.relay.process_inbound(inbound_job())

    assert upstream.calls_to('crm.contact.add') == []
    assert components.mapper.find_by_channel_identity(IDENTITY).crm_contact_id == 777


def test_same_message_twice_sends_once(components, upstream):
    first = components.relay.process_inbound(inbound_job())
    second = components.relay.process_inbound(inbound_job())

    assert first.status == 'relayed'
    assert second.status == 'duplicate'
    assert len(upstream.calls_to('im.message.add')) == 1


def test_known_identity_skips_creation(components, upstream):
    components.mapper.create(IDENTITY, 501, 42)

    result = components.relay.process_inbound(inbound_job(message_id='wamid.IN2', body='again'))

    assert result.data['mapping_created'] is False
    assert upstream.calls_to('crm.contact.add') == []
    assert upstream.calls_to('imconnector.send.messages') == []
    assert upstream.calls_to('im.message.add')[0][2]['json']['MESSAGE'] == 'again'


def test_mapping_created_while_waiting_for_lock_is_reused(components, upstream, monkeypatch):
    winner = components.mapper.create(IDENTITY, 501, 42)
    answers = iter([None, winner])
    monkeypatch.setattr(components.mapper, 'find_by_channel_identity', lambda identity: next(answers))

    result = components.relay.process_inbound(inbound_job())

    assert result.success is True
    assert upstream.calls_to('crm.contact.add') == []
    assert upstream.calls_to('imconnector.send.messages') == []


def test_conflict_on_insert_falls_back_to_winner(components, upstream):
    def concurrent_winner(url, kwargs):
        # Another worker finishes onboarding the same identity with chat 41
        components.mapper.create(IDENTITY, 500, 41)
        return make_response(200, {'result': {'CHAT_ID': 42}})

    upstream.add('POST', crm_method_url('imconnector.send.messages'), concurrent_winner)

    result = components.relay.process_inbound(inbound_job())

    assert result.success is True
    assert result.data['crm_chat_id'] == 41
    assert upstream.calls_to('im.message.add')[0][2]['json']['DIALOG_ID'] == 'chat41'


def test_contact_creation_failure_is_retryable(components, upstream, redis_client):
    upstream.add('POST', crm_method_url('crm.contact.add'),
                 make_response(400, {'error': 'ERROR_CORE', 'error_description': 'Bad phone'}))

    with pytest.raises(MappingCreationError):
        components.relay.process_inbound(inbound_job())

    assert components.mapper.find_by_channel_identity(IDENTITY) is None
    assert redis_client.exists('msg:processed:wamid.IN1') == 0


def test_crm_outage_on_send_is_retryable_and_not_marked(components, upstream, redis_client):
    components.mapper.create(IDENTITY, 501, 42)
    upstream.add('POST', crm_method_url('im.message.add'), make_response(502, text='bad gateway'))

    with pytest.raises(TransientApiError):
        components.relay.process_inbound(inbound_job())

    assert redis_client.exists('msg:processed:wamid.IN1') == 0


def test_reply_is_relayed_to_channel_and_touches_mapping(components, upstream, redis_client):
    created = components.mapper.create(IDENTITY, 501, 42)
    redis_client.flushall()

    result = components.relay.process_outbound(outbound_job())

    assert result.success is True
    sends = channel_sends(upstream)
    assert len(sends) == 1
    assert sends[0][2]['json']['to'] == IDENTITY
    assert sends[0][2]['json']['text']['body'] == 'hi back'
    redis_client.flushall()
    assert components.mapper.find_by_crm_chat_id(42).last_message_at >= created.last_message_at


def test_malformed_dialog_id_is_dropped(components, upstream, caplog):
    result = components.relay.process_outbound(outbound_job(dialog_id='abc'))

    assert result.success is False
    assert result.error_type == 'MalformedWebhookError'
    assert channel_sends(upstream) == []
    assert 'Invalid DIALOG_ID' in caplog.text


@pytest.mark.parametrize('from_user_id', ['0', None, ''])
def test_system_messages_are_not_relayed(components, upstream, from_user_id):
    components.mapper.create(IDENTITY, 501, 42)

    result = components.relay.process_outbound(outbound_job(from_user_id=from_user_id))

    assert result.success is True
    assert result.status == 'ignored_system_message'
    assert channel_sends(upstream) == []


def test_reply_to_unknown_chat_is_dropped(components, upstream):
    result = components.relay.process_outbound(outbound_job(dialog_id='chat999'))

    assert result.success is False
    assert result.status == 'mapping_not_found'
    assert channel_sends(upstream) == []


def test_channel_rejection_is_a_failure_result(components, upstream):
    components.mapper.create(IDENTITY, 501, 42)
    upstream.add('POST', GRAPH_MESSAGES_URL, make_response(400, {'error': {'message': 'Bad recipient', 'code': 131030}}))

    result = components.relay.process_outbound(outbound_job())

    assert result.success is False
    assert result.error_type == 'ChannelApiError'


def test_channel_outage_is_retryable(components, upstream):
    components.mapper.create(IDENTITY, 501, 42)
    upstream.add('POST', GRAPH_MESSAGES_URL, make_response(503, text='unavailable'))

    with pytest.raises(TransientApiError):
        components.relay.process_outbound(outbound_job())


def test_direct_sends(components, upstream):
    channel_result = components.relay.send_channel(ChannelSendJob(to=IDENTITY, body='promo'))
    crm_result = components.relay.send_crm(CrmSendJob(chat_id=42, body='note', is_system=True))

    assert channel_result.data['channel_message_id'] == 'wamid.OUT1'
    assert crm_result.data['crm_message_id'] == 9001
    assert upstream.calls_to('im.message.add')[0][2]['json']['SYSTEM'] == 'Y'


def test_direct_crm_send_to_unknown_portal_fails_without_retry(components, upstream):
    result = components.relay.send_crm(CrmSendJob(chat_id=42, body='note', portal_address='https://other.bitrix24.com'))
    assert result.success is False
    assert result.error_type == 'PortalNotConfiguredError'


def test_outcomes_are_counted(components, upstream):
    components.relay.process_inbound(inbound_job())
    components.relay.process_outbound(outbound_job(dialog_id='abc'))

    registry = components.metrics.registry
    assert registry.get_sample_value('zaptrix_messages_processed_total',
                                     {'direction': 'inbound', 'status': 'relayed'}) == 1.0
    assert registry.get_sample_value('zaptrix_messages_failed_total',
                                     {'direction': 'outbound', 'error_type': 'MalformedWebhookError'}) == 1.0


def test_storage_outage_on_inbound_is_retryable(components, upstream, redis_client, monkeypatch):
    def lost_connection(criterion, label):
        raise OperationalError('SELECT', {}, Exception('server closed the connection unexpectedly'))

    monkeypatch.setattr(components.mapper, '_lookup', lost_connection)

    with pytest.raises(TransientApiError):
        components.relay.process_inbound(inbound_job())

    assert upstream.calls_to('im.message.add') == []
    assert redis_client.exists('msg:processed:wamid.IN1') == 0


def test_lock_backend_outage_on_first_contact_is_retryable(components, upstream):
    broken = MagicMock()
    broken.lock.side_effect = redis.ConnectionError('redis down')
    components.relay.lock = KeyedLock(broken)

    with pytest.raises(TransientApiError):
        components.relay.process_inbound(inbound_job())

    assert upstream.calls_to('crm.contact.add') == []


def test_storage_outage_on_outbound_is_retryable(components, upstream, monkeypatch):
    def lost_connection(criterion, label):
        raise OperationalError('SELECT', {}, Exception('server closed the connection unexpectedly'))

    monkeypatch.setattr(components.mapper, '_lookup', lost_connection)

    with pytest.raises(TransientApiError):
        components.relay.process_outbound(outbound_job())
    assert channel_sends(upstream) == []


def test_concurrent_first_contact_creates_one_contact_and_chat(components, upstream):
    results, errors = [], []

    def relay(message_id):
        try:
            results.append(components.relay.process_inbound(inbound_job(message_id=message_id)))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=relay, args=(f"wamid.IN{n}",)) for n in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert [result.status for result in results] == ['relayed'] * 5
    assert sum(result.data['mapping_created'] for result in results) == 1
    assert len(upstream.calls_to('crm.contact.add')) == 1
    assert len(upstream.calls_to('imconnector.send.messages')) == 1
    assert len(upstream.calls_to('im.message.add')) == 5


def test_system_message_to_unknown_chat_reports_missing_mapping(components, upstream):
    result = components.relay.process_outbound(outbound_job(dialog_id='chat999', from_user_id=''))

    assert result.status == 'mapping_not_found'
    assert channel_sends(upstream) == []


def test_template_send(components, upstream):
    result = components.relay.send_channel(ChannelSendJob(
        to=IDENTITY, type='template', template_name='order_update', parameters=['Ana', '#123']))

    assert result.data == {'channel_message_id': 'wamid.OUT1', 'message_type': 'template'}
    template = upstream.calls_to(GRAPH_MESSAGES_URL)[0][2]['json']['template']
    assert template['name'] == 'order_update'
    assert template['components'][0]['parameters'][1] == {'type': 'text', 'text': '#123'}


def test_media_send(components, upstream):
    result = components.relay.send_channel(ChannelSendJob(
        to=IDENTITY, type='document', media_url='https://files.example.com/invoice.pdf', filename='invoice.pdf'))

    assert result.success is True
    payload = upstream.calls_to(GRAPH_MESSAGES_URL)[0][2]['json']
    assert payload['type'] == 'document'
    assert payload['document'] == {'link': 'https://files.example.com/invoice.pdf', 'caption': '',
                                   'filename': 'invoice.pdf'}


def test_creation_lock_outlives_the_onboarding_calls(components, upstream, monkeypatch):
    held = []
    original_hold = components.relay.lock.hold

    def spy(key, timeout, blocking_timeout):
        held.append((key, timeout))
        return original_hold(key, timeout=timeout, blocking_timeout=blocking_timeout)

    monkeypatch.setattr(components.relay.lock, 'hold', spy)

    components.relay.process_inbound(inbound_job())

    assert held == [(f"mapping-create:{IDENTITY}", TestingConfig.MAPPING_CREATE_LOCK_SECONDS)]
    assert TestingConfig.MAPPING_CREATE_LOCK_SECONDS > TestingConfig.HTTP_TIMEOUT_SECONDS * 4
