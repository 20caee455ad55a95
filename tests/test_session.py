"""Tests for mail_reflector.session."""

from __future__ import annotations

import asyncio
import threading
import time
from unittest.mock import ANY, patch

import pytest
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError
from imapclient.imapclient import SEEN

from tests.conftest import _build_plain_email, _imap_envelope, _make_mock_client

from mail_reflector.config import ImapConfig, SecurityMode
from mail_reflector.errors import (
    ConnectError,
    ContinuationUnsupportedError,
    MailboxNotFoundError,
    MessageFetchError,
    OperationTimeoutError,
    TransportError,
)
from mail_reflector.registry import ProblematicUidRegistry
from mail_reflector.session import IdleOutcome, MailboxSession


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_ssl(self, imap_config: ImapConfig):
        mock_client = _make_mock_client()
        with patch("mail_reflector.session.IMAPClient", return_value=mock_client) as MockClient:
            session = await MailboxSession.connect(imap_config)

        MockClient.assert_called_once_with(
            "imap.test.com",
            port=993,
            ssl=True,
            ssl_context=ANY,
            timeout=ANY,
        )
        mock_client.starttls.assert_not_called()
        mock_client.login.assert_called_once_with("reflector@test.com", "imap-secret")
        mock_client.select_folder.assert_called_once_with("INBOX", readonly=False)
        assert session.mailbox == "INBOX"
        assert session.status.uid_validity == 42
        assert session.has_idle
        assert session.usable

    @pytest.mark.asyncio
    async def test_connect_starttls(self):
        config = ImapConfig(
            host="imap.test.com",
            port=143,
            security=SecurityMode.STARTTLS,
            username="u",
            password="p",
        )
        mock_client = _make_mock_client()
        with patch("mail_reflector.session.IMAPClient", return_value=mock_client) as MockClient:
            await MailboxSession.connect(config)
        assert MockClient.call_args.kwargs["ssl"] is False
        mock_client.starttls.assert_called_once()

    @pytest.mark.asyncio
    async def test_login_failure_raises_connect_error(self, imap_config: ImapConfig):
        mock_client = _make_mock_client()
        mock_client.login.side_effect = IMAPClientError("AUTHENTICATIONFAILED")
        with patch("mail_reflector.session.IMAPClient", return_value=mock_client):
            with pytest.raises(ConnectError, match="AUTHENTICATIONFAILED"):
                await MailboxSession.connect(imap_config)
        mock_client.shutdown.assert_called_once()

    @pytest.mark.asyncio
    async def test_capability_check_failure(self, imap_config: ImapConfig):
        mock_client = _make_mock_client()
        mock_client.capabilities.side_effect = OSError("connection reset")
        with patch("mail_reflector.session.IMAPClient", return_value=mock_client):
            with pytest.raises(ConnectError):
                await MailboxSession.connect(imap_config)
        mock_client.login.assert_not_called()

    @pytest.mark.asyncio
    async def test_unreachable_server(self, imap_config: ImapConfig):
        with patch(
            "mail_reflector.session.IMAPClient",
            side_effect=ConnectionRefusedError("refused"),
        ):
            with pytest.raises(ConnectError, match="refused"):
                await MailboxSession.connect(imap_config)

    @pytest.mark.asyncio
    async def test_select_failure_closes_session(self, imap_config: ImapConfig):
        mock_client = _make_mock_client()
        mock_client.select_folder.side_effect = IMAPClientError("Mailbox doesn't exist")
        with patch("mail_reflector.session.IMAPClient", return_value=mock_client):
            with pytest.raises(ConnectError, match="INBOX"):
                await MailboxSession.connect(imap_config)
        mock_client.logout.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_without_idle(self, imap_config: ImapConfig):
        mock_client = _make_mock_client(capabilities=(b"IMAP4REV1",))
        with patch("mail_reflector.session.IMAPClient", return_value=mock_client):
            session = await MailboxSession.connect(imap_config)
        assert not session.has_idle

    @pytest.mark.asyncio
    async def test_late_login_after_timeout_is_shut_down(self, imap_config: ImapConfig):
        config = imap_config.model_copy(
            update={"connect_timeout_seconds": 0.05, "command_timeout_seconds": 0.02}
        )
        mock_client = _make_mock_client()
        mock_client.login.side_effect = lambda *args: time.sleep(0.3)
        with patch("mail_reflector.session.IMAPClient", return_value=mock_client):
            with pytest.raises(ConnectError, match="timed out"):
                await MailboxSession.connect(config)
            mock_client.shutdown.assert_not_called()
            await asyncio.sleep(0.5)
        mock_client.shutdown.assert_called_once()
        mock_client.select_folder.assert_not_called()


class TestSelectAndStatus:
    @pytest.mark.asyncio
    async def test_select_is_memoized(self, make_session):
        client = _make_mock_client()
        session = make_session(client)
        first = await session.select_mailbox("INBOX")
        second = await session.select_mailbox("INBOX")
        assert first is second
        client.select_folder.assert_called_once()

    @pytest.mark.asyncio
    async def test_reselect_in_other_mode(self, make_session):
        client = _make_mock_client()
        session = make_session(client)
        await session.select_mailbox("INBOX")
        await session.select_mailbox("INBOX", readonly=True)
        assert client.select_folder.call_count == 2

    @pytest.mark.asyncio
    async def test_refresh_status(self, make_session):
        client = _make_mock_client(unseen=[1, 2])
        session = make_session(client)
        await session.select_mailbox("INBOX")
        status = await session.refresh_status()
        assert status.unseen == 2
        assert status.uid_validity == 42

    @pytest.mark.asyncio
    async def test_uid_validity_change_clears_registry(
        self, make_session, registry: ProblematicUidRegistry
    ):
        client = _make_mock_client()
        session = make_session(client)
        await session.select_mailbox("INBOX")
        for _ in range(3):
            registry.record_failure(9)
        client.folder_status.return_value = {b"MESSAGES": 0, b"UNSEEN": 0, b"UIDVALIDITY": 43}
        await session.refresh_status()
        assert not registry.is_blocked(9)

    @pytest.mark.asyncio
    async def test_is_connected(self, make_session):
        client = _make_mock_client()
        session = make_session(client)
        assert await session.is_connected()
        client.noop.side_effect = IMAPClientAbortError("socket error")
        assert not await session.is_connected()
        assert not session.usable

    @pytest.mark.asyncio
    async def test_find_sent_folder(self, make_session):
        client = _make_mock_client(sent_folder=b"Gesendete Objekte")
        session = make_session(client)
        assert await session.find_sent_folder() == "Gesendete Objekte"

    @pytest.mark.asyncio
    async def test_find_sent_folder_not_advertised(self, make_session):
        client = _make_mock_client(sent_folder=None)
        session = make_session(client)
        assert await session.find_sent_folder() is None

    @pytest.mark.asyncio
    async def test_list_folders(self, make_session):
        client = _make_mock_client()
        client.list_folders.return_value = [
            ((b"\\HasNoChildren",), b"/", "INBOX"),
            ((b"\\Sent",), b"/", "Sent"),
        ]
        session = make_session(client)
        assert await session.list_folders() == ["INBOX", "Sent"]


class TestMessages:
    @pytest.mark.asyncio
    async def test_search_unseen_sorted(self, make_session):
        client = _make_mock_client()
        client.search.return_value = [12, 3, 7]
        session = make_session(client)
        assert await session.search_unseen() == [3, 7, 12]
        client.search.assert_called_once_with(["UNSEEN"])

    @pytest.mark.asyncio
    async def test_fetch_envelopes_drops_missing_uids(self, make_session):
        raw = _build_plain_email()
        client = _make_mock_client(messages={1: (_imap_envelope(), raw)})
        session = make_session(client)
        envelopes = await session.fetch_envelopes([1, 2])
        assert list(envelopes) == [1]
        assert envelopes[1].from_address == "Board@Org.Example"
        client.fetch.assert_called_once_with([1, 2], ["ENVELOPE"])

    @pytest.mark.asyncio
    async def test_fetch_envelopes_empty(self, make_session):
        client = _make_mock_client()
        session = make_session(client)
        assert await session.fetch_envelopes([]) == {}
        client.fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_fetch_message(self, make_session):
        raw = _build_plain_email()
        client = _make_mock_client(messages={5: (_imap_envelope(), raw)})
        session = make_session(client)
        fetched = await session.fetch_message(5)
        assert fetched.uid == 5
        assert fetched.raw_bytes == raw
        assert fetched.envelope.subject == "Update"
        client.fetch.assert_called_once_with([5], ["ENVELOPE", "BODY.PEEK[]"])

    @pytest.mark.asyncio
    async def test_fetch_message_missing(self, make_session):
        client = _make_mock_client()
        session = make_session(client)
        with pytest.raises(MessageFetchError) as excinfo:
            await session.fetch_message(5)
        assert excinfo.value.uid == 5
        assert session.usable

    @pytest.mark.asyncio
    async def test_fetch_message_without_body(self, make_session):
        client = _make_mock_client()
        client.fetch.side_effect = None
        client.fetch.return_value = {5: {b"ENVELOPE": _imap_envelope()}}
        session = make_session(client)
        with pytest.raises(MessageFetchError, match="no body"):
            await session.fetch_message(5)

    @pytest.mark.asyncio
    async def test_mark_seen(self, make_session):
        client = _make_mock_client()
        session = make_session(client)
        await session.mark_seen(5)
        client.add_flags.assert_called_once_with([5], [SEEN], silent=True)

    @pytest.mark.asyncio
    async def test_append(self, make_session):
        client = _make_mock_client()
        session = make_session(client)
        await session.append("Sent", b"raw")
        client.append.assert_called_once_with("Sent", b"raw", flags=(SEEN,), msg_time=ANY)


class TestErrorTranslation:
    @pytest.mark.asyncio
    async def test_timeout_makes_session_unusable(self, make_session):
        config = ImapConfig(
            host="imap.test.com",
            username="u",
            password="p",
            message_timeout_seconds=0.05,
        )
        client = _make_mock_client()
        client.fetch.side_effect = lambda *a, **kw: time.sleep(0.3)
        session = make_session(client, config=config)

        with pytest.raises(OperationTimeoutError):
            await session.fetch_message(1)
        assert not session.usable
        with pytest.raises(TransportError, match="no longer usable"):
            await session.search_unseen()

    @pytest.mark.asyncio
    async def test_abort_makes_session_unusable(self, make_session):
        client = _make_mock_client()
        client.search.side_effect = IMAPClientAbortError("socket error: EOF")
        session = make_session(client)
        with pytest.raises(TransportError):
            await session.search_unseen()
        assert not session.usable

    @pytest.mark.asyncio
    async def test_no_response_keeps_session_usable(self, make_session):
        client = _make_mock_client()
        client.search.side_effect = IMAPClientError("SEARCH command error: BAD")
        session = make_session(client)
        with pytest.raises(TransportError):
            await session.search_unseen()
        assert session.usable

    @pytest.mark.asyncio
    async def test_missing_mailbox_on_append(self, make_session):
        client = _make_mock_client()
        client.append.side_effect = IMAPClientError(
            "append failed: [TRYCREATE] Mailbox doesn't exist"
        )
        session = make_session(client)
        with pytest.raises(MailboxNotFoundError):
            await session.append("Sent Items", b"raw")
        assert session.usable

    @pytest.mark.asyncio
    async def test_continuation_refused_on_append(self, make_session):
        client = _make_mock_client()
        client.append.side_effect = IMAPClientError("unexpected response to literal continuation")
        session = make_session(client)
        with pytest.raises(ContinuationUnsupportedError):
            await session.append("Sent", b"raw")

    @pytest.mark.asyncio
    async def test_socket_error_makes_session_unusable(self, make_session):
        client = _make_mock_client()
        client.add_flags.side_effect = ConnectionResetError("reset by peer")
        session = make_session(client)
        with pytest.raises(TransportError, match="reset by peer"):
            await session.mark_seen(1)
        assert not session.usable


class TestClose:
    @pytest.mark.asyncio
    async def test_close_logs_out_once(self, make_session):
        client = _make_mock_client()
        session = make_session(client)
        await session.close()
        await session.close()
        client.logout.assert_called_once()
        assert session.closed
        assert not session.usable

    @pytest.mark.asyncio
    async def test_close_unusable_drops_socket(self, make_session):
        client = _make_mock_client()
        session = make_session(client)
        session.discard()
        await session.close()
        client.logout.assert_not_called()
        client.shutdown.assert_called_once()

    @pytest.mark.asyncio
    async def test_close_never_raises(self, make_session):
        client = _make_mock_client()
        client.logout.side_effect = IMAPClientAbortError("gone")
        session = make_session(client)
        await session.close()
        client.shutdown.assert_called_once()

    @pytest.mark.asyncio
    async def test_logout_grace(self, make_session):
        client = _make_mock_client()
        client.logout.side_effect = lambda: time.sleep(0.3)
        session = make_session(client)
        started = time.monotonic()
        await session.close(grace=0.05)
        assert time.monotonic() - started < 0.25
        client.shutdown.assert_called_once()

    @pytest.mark.asyncio
    async def test_async_context_manager(self, make_session):
        client = _make_mock_client()
        async with make_session(client) as session:
            await session.search_unseen()
        client.logout.assert_called_once()

    @pytest.mark.asyncio
    async def test_closed_session_refuses_commands(self, make_session):
        session = make_session(_make_mock_client())
        await session.close()
        with pytest.raises(TransportError, match="closed"):
            await session.search_unseen()


class TestIdle:
    @pytest.mark.asyncio
    async def test_idle_returns_on_new_mail(self, make_session):
        client = _make_mock_client()
        client.idle_check.side_effect = [[], [(3, b"EXISTS")]]
        session = make_session(client)
        outcome = await session.idle_wait(threading.Event(), renew_after=60)
        assert outcome is IdleOutcome.CHANGED
        client.idle.assert_called_once()
        client.idle_done.assert_called_once()
        assert not session.idling

    @pytest.mark.asyncio
    async def test_idle_stops_when_flag_set(self, make_session):
        client = _make_mock_client()
        client.idle_check.side_effect = lambda timeout: time.sleep(0.01) or []
        session = make_session(client)
        stop = threading.Event()

        task = asyncio.create_task(session.idle_wait(stop, renew_after=60))
        await asyncio.sleep(0.05)
        assert session.idling
        stop.set()
        outcome = await asyncio.wait_for(task, 1.0)
        assert outcome is IdleOutcome.STOPPED
        client.idle_done.assert_called_once()

    @pytest.mark.asyncio
    async def test_idle_renews_after_deadline(self, make_session):
        client = _make_mock_client()
        client.idle_check.return_value = []
        session = make_session(client)
        outcome = await session.idle_wait(threading.Event(), renew_after=0)
        assert outcome is IdleOutcome.RENEW
        client.idle_done.assert_called_once()

    @pytest.mark.asyncio
    async def test_bye_during_idle(self, make_session):
        client = _make_mock_client()
        client.idle_check.return_value = [(b"BYE", b"Server shutting down")]
        session = make_session(client)
        with pytest.raises(TransportError):
            await session.idle_wait(threading.Event(), renew_after=60)
        assert not session.usable
        client.idle_done.assert_called_once()

    @pytest.mark.asyncio
    async def test_no_other_command_while_idling(self, make_session):
        client = _make_mock_client()
        client.idle_check.side_effect = lambda timeout: time.sleep(0.01) or []
        session = make_session(client)
        stop = threading.Event()

        task = asyncio.create_task(session.idle_wait(stop, renew_after=60))
        await asyncio.sleep(0.05)
        with pytest.raises(TransportError, match="in flight"):
            await session.search_unseen()
        stop.set()
        await task
        # Usable again once DONE was sent
        await session.search_unseen()
        client.search.assert_called_once()
