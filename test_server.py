"""
End-to-end tests: ChatClient against the reference service.
"""

import asyncio
import json
from contextlib import asynccontextmanager

import httpx
import pytest

from openkey_crypto.attachments import AttachmentKind, AttachmentStatus
from openkey_crypto.codec import UNAVAILABLE_TEXT
from openkey_client.api import AuthFailure
from openkey_client.config import ClientConfig
from openkey_client.models import DeliveryStatus, secret_conversation_id
from openkey_client.sender import OutgoingFile
from openkey_client.service import ChatClient
from openkey_server.main import create_app

SHARED_SECRET = "OPENKEY_DEMO"


@pytest.fixture
def app(tmp_path):
    return create_app(f"sqlite+aiosqlite:///{tmp_path / 'server.db'}", str(tmp_path / "uploads"))


@asynccontextmanager
async def serving(app):
    # ASGITransport does not run the lifespan
    app.state.upload_dir.mkdir(parents=True, exist_ok=True)
    await app.state.db.create_tables()
    try:
        yield
    finally:
        await app.state.db.dispose()


def make_client(app, storage_dir, **settings):
    http_client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
    config = ClientConfig(server_url="http://testserver", storage_dir=str(storage_dir), **settings)
    return ChatClient(config, http_client=http_client)


def shared_key_clients(app, tmp_path):
    """Two devices configured with the same fixed master secret"""
    return (
        make_client(app, tmp_path / "alice", key_policy="fixed", master_secret=SHARED_SECRET),
        make_client(app, tmp_path / "bob", key_policy="fixed", master_secret=SHARED_SECRET),
    )


def test_plain_and_secret_messages(app, tmp_path):
    async def scenario():
        alice, bob = shared_key_clients(app, tmp_path)
        async with serving(app), alice, bob:
            alice_user = await alice.register("alice", "wonderland")
            bob_user = await bob.register("bob", "builder")

            assert await alice.refresh()
            await alice.send_message(bob_user.id, "hello bob")
            await alice.send_message(secret_conversation_id(bob_user.id), "meet at noon")
            await alice.sender.drain()

            stored = await app.state.db.get_conversation(int(alice_user.id), int(bob_user.id))
            assert stored[0].content == "hello bob"
            assert "meet at noon" not in stored[1].content
            assert json.loads(stored[1].content)["key_id"] == "master"

            assert await bob.refresh()
            secret = bob.get_chat(secret_conversation_id(alice_user.id))
            plain = bob.get_chat(alice_user.id)
            assert [m.text for m in plain.messages] == ["hello bob"]
            assert [m.text for m in secret.messages] == ["meet at noon"]
            assert secret.unread_count == 1 and plain.unread_count == 1

            await bob.mark_chat_as_read(secret.id)
            assert bob.get_chat(secret.id).unread_count == 0

            assert await alice.refresh()
            mine = alice.get_chat(secret_conversation_id(bob_user.id)).messages
            assert [(m.optimistic, m.delivery_status) for m in mine] == [(False, DeliveryStatus.READ)]
    asyncio.run(scenario())


def test_secret_attachment_round_trip(app, tmp_path):
    async def scenario():
        alice, bob = shared_key_clients(app, tmp_path)
        async with serving(app), alice, bob:
            alice_user = await alice.register("alice", "wonderland")
            bob_user = await bob.register("bob", "builder")
            await alice.refresh()

            picture = OutgoingFile(name="cat.png", media_type="image/png", data=b"\x89PNG" + bytes(range(200)))
            await alice.send_message(secret_conversation_id(bob_user.id), file=picture)
            await alice.sender.drain()

            uploaded = list(app.state.upload_dir.iterdir())
            assert len(uploaded) == 1 and uploaded[0].suffix == ".enc"
            assert picture.data not in uploaded[0].read_bytes()

            await bob.refresh()
            message = bob.get_chat(secret_conversation_id(alice_user.id)).messages[-1]
            assert message.attachment_kind == AttachmentKind.IMAGE

            view = await bob.open_attachment(message)
            assert view.status == AttachmentStatus.READY
            assert view.attachment.data == picture.data
            assert view.attachment.media_type == "image/png"
    asyncio.run(scenario())


def test_rotating_keys_stay_on_device(app, tmp_path):
    """Another device without the day key sees the unavailable placeholder"""
    async def scenario():
        alice = make_client(app, tmp_path / "alice")
        bob = make_client(app, tmp_path / "bob")
        async with serving(app), alice, bob:
            alice_user = await alice.register("alice", "wonderland")
            bob_user = await bob.register("bob", "builder")
            await alice.refresh()

            conversation_id = secret_conversation_id(bob_user.id)
            await alice.send_message(conversation_id, "for your eyes only")
            await alice.send_message(conversation_id, file=OutgoingFile("notes.txt", "text/plain", b"notes"))
            await alice.sender.drain()

            await alice.refresh()
            assert alice.get_chat(conversation_id).messages[0].text == "for your eyes only"

            await bob.refresh()
            text_message, file_message = bob.get_chat(secret_conversation_id(alice_user.id)).messages
            assert text_message.text == UNAVAILABLE_TEXT

            view = await bob.open_attachment(file_message)
            assert view.status == AttachmentStatus.FAILED
    asyncio.run(scenario())


def test_login_resume_and_logout(app, tmp_path):
    async def scenario():
        async with serving(app):
            async with make_client(app, tmp_path / "alice") as alice:
                await alice.register("alice", "wonderland")
                with pytest.raises(AuthFailure):
                    await alice.login("alice", "wrong")
                with pytest.raises(AuthFailure):
                    await alice.register("alice", "again")

            async with make_client(app, tmp_path / "alice") as again:
                assert await again.resume()
                assert again.session.current_user.display_name == "alice"
                await again.logout()
                assert not again.session.is_authenticated

            async with make_client(app, tmp_path / "alice") as fresh:
                assert not await fresh.resume()
                user = await fresh.login("alice", "wonderland")
                assert user.display_name == "alice"
    asyncio.run(scenario())


def test_plain_attachment_is_not_fetched(app, tmp_path):
    async def scenario():
        alice = make_client(app, tmp_path / "alice")
        bob = make_client(app, tmp_path / "bob")
        async with serving(app), alice, bob:
            alice_user = await alice.register("alice", "wonderland")
            bob_user = await bob.register("bob", "builder")
            await alice.refresh()

            report = OutgoingFile(name="report.pdf", media_type="application/pdf", data=b"%PDF-1.7")
            await alice.send_message(bob_user.id, "see attached", report)
            await alice.sender.drain()

            await bob.refresh()
            message = bob.get_chat(alice_user.id).messages[-1]
            view = await bob.open_attachment(message)
            assert view.status == AttachmentStatus.NOT_SECRET
            assert view.url == message.attachment_ref
            assert message.attachment_ref.endswith(".pdf")
    asyncio.run(scenario())


def test_requests_need_a_token(app):
    async def scenario():
        transport = httpx.ASGITransport(app=app)
        async with serving(app), httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
            assert (await http.get("/users")).status_code == 401
            response = await http.get("/users", headers={"Authorization": "Bearer forged"})
            assert response.status_code == 403
    asyncio.run(scenario())
