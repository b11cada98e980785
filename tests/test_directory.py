"""
Enigmo - Peer directory tests.
"""

import threading

import pytest

from enigmo.directory import DirectoryObserver, PeerDirectory
from enigmo.errors import DirectoryError, IdentityConflict
from enigmo.identity import Identity, generate_identity


class RecordingObserver(DirectoryObserver):
    def __init__(self):
        self.events = []

    def on_peer_status(self, record):
        self.events.append((record.id, record.online))


@pytest.fixture
def directory():
    return PeerDirectory()


def test_register_is_idempotent(directory):
    identity = generate_identity().identity

    first = directory.register(identity, "alice")
    second = directory.register(identity)

    assert first.id == second.id
    assert second.nickname == "alice"
    assert len(directory) == 1


def test_nickname_last_writer_wins(directory):
    identity = generate_identity().identity
    directory.register(identity, "alice")
    directory.register(identity, "alice2")

    assert directory.lookup(identity.id).nickname == "alice2"


def test_identity_conflict_on_different_keys(directory):
    original = generate_identity().identity
    impostor_keys = generate_identity().identity
    impostor = Identity(
        id=original.id,
        signing_public_key=impostor_keys.signing_public_key,
        agreement_public_key=impostor_keys.agreement_public_key,
    )
    directory.register(original, "alice")

    with pytest.raises(IdentityConflict):
        directory.register(impostor, "mallory")

    record = directory.lookup(original.id)
    assert record.identity.same_keys(original)
    assert record.nickname == "alice"


def test_online_offline_cycle(directory):
    identity = generate_identity().identity
    directory.register(identity)

    directory.mark_online(identity.id, 7)
    record = directory.lookup(identity.id)
    assert record.online is True
    assert record.connection_ref == 7
    assert directory.stats() == {"total": 1, "online": 1, "offline": 0}

    directory.mark_offline(identity.id, 7)
    record = directory.lookup(identity.id)
    assert record.online is False
    assert record.connection_ref is None
    assert directory.stats() == {"total": 1, "online": 0, "offline": 1}


def test_stale_connection_cannot_mark_offline(directory):
    identity = generate_identity().identity
    directory.register(identity)
    directory.mark_online(identity.id, 1)
    directory.mark_online(identity.id, 2)

    directory.mark_offline(identity.id, 1)

    record = directory.lookup(identity.id)
    assert record.online is True
    assert record.connection_ref == 2


def test_mark_online_requires_registration(directory):
    with pytest.raises(DirectoryError):
        directory.mark_online("unknown", 1)


def test_lookup_returns_copy(directory):
    identity = generate_identity().identity
    directory.register(identity, "alice")

    snapshot = directory.lookup(identity.id)
    snapshot.nickname = "changed"
    snapshot.online = True

    record = directory.lookup(identity.id)
    assert record.nickname == "alice"
    assert record.online is False


def test_list_online_excludes_requester(directory):
    a = generate_identity().identity
    b = generate_identity().identity
    c = generate_identity().identity
    for slot, identity in enumerate((a, b, c), start=1):
        directory.register(identity)
    directory.mark_online(a.id, 1)
    directory.mark_online(b.id, 2)

    online = [r.id for r in directory.list_online(exclude=a.id)]

    assert online == [b.id]
    assert len(directory.list_all()) == 3


def test_observer_sees_transitions_once(directory):
    observer = RecordingObserver()
    directory.add_observer(observer)
    identity = generate_identity().identity
    directory.register(identity)

    directory.mark_online(identity.id, 1)
    directory.mark_online(identity.id, 2)  # already online
    directory.mark_offline(identity.id)
    directory.mark_offline(identity.id)  # already offline

    assert observer.events == [(identity.id, True), (identity.id, False)]


def test_observer_errors_are_contained(directory):
    class Broken(DirectoryObserver):
        def on_peer_status(self, record):
            raise RuntimeError("boom")

    directory.add_observer(Broken())
    identity = generate_identity().identity
    directory.register(identity)

    directory.mark_online(identity.id, 1)

    assert directory.lookup(identity.id).online is True


def test_concurrent_registration(directory):
    identities = [generate_identity().identity for _ in range(50)]

    threads = [threading.Thread(target=directory.register, args=(i,)) for i in identities]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(directory) == 50
