import pytest

from cypher_mcp.db.database import get_db_session
from cypher_mcp.db.models import Connection
from cypher_mcp.db.repository import ConnectionRepository
from cypher_mcp.utils.errors import ErrorKind, GatewayError


def _connection(repository, user_id, **overrides):
    values = dict(uri="neo4j+s://db.example.io", username="neo4j", password="pw", database="movies")
    values.update(overrides)
    return repository.create_connection(user_id=user_id, **values)


def test_create_and_get_user(repository):
    user = repository.create_user("a@example.com")
    assert user.id.startswith("usr_")
    assert repository.get_user(user.id).email == "a@example.com"
    assert repository.get_user_by_email("a@example.com").id == user.id
    assert repository.get_or_create_user("a@example.com").id == user.id
    assert repository.get_or_create_user(None).id != user.id


def test_credentials_are_encrypted_at_rest(repository, engine):
    user = repository.create_user()
    connection_id = _connection(repository, user.id)
    assert connection_id.startswith("conn_")

    with get_db_session(engine) as session:
        record = session.get(Connection, connection_id)
    assert "db.example.io" not in record.neo4j_uri_encrypted
    assert record.neo4j_password_encrypted != "pw"

    decrypted = repository.get_connection(connection_id)
    assert decrypted.connection.uri == "neo4j+s://db.example.io"
    assert decrypted.connection.username == "neo4j"
    assert decrypted.connection.password == "pw"
    assert decrypted.connection.database == "movies"
    assert decrypted.read_only is False
    assert "pw" not in repr(decrypted.connection)


def test_missing_connection(repository):
    assert repository.get_connection("conn_missing") is None


def test_wrong_key_is_a_connection_fault(repository, engine):
    user = repository.create_user()
    connection_id = _connection(repository, user.id)
    other = ConnectionRepository(engine, "a-different-key")
    with pytest.raises(GatewayError) as exc:
        other.get_connection(connection_id)
    assert exc.value.kind is ErrorKind.CONNECTION
    assert exc.value.message == "Failed to decrypt connection credentials"


def test_active_connection_switching(repository):
    user = repository.create_user()
    first = _connection(repository, user.id)
    second = _connection(repository, user.id, read_only=True)

    assert repository.set_active_connection(second, user.id)
    active_id, active = repository.get_active_connection_for_user(user.id)
    assert active_id == second
    assert active.read_only is True
    assert not repository.set_active_connection("conn_nope", user.id)

    metadata = {m.id: m for m in repository.list_connections(user.id)}
    assert set(metadata) == {first, second}
    assert metadata[first].is_active is False


def test_update_and_delete(repository):
    user = repository.create_user()
    connection_id = _connection(repository, user.id)

    assert repository.update_connection(connection_id, password="new-pw", name="prod")
    updated = repository.get_connection(connection_id)
    assert updated.connection.password == "new-pw"
    assert updated.name == "prod"
    with pytest.raises(ValueError):
        repository.update_connection(connection_id, colour="blue")
    assert not repository.update_connection("conn_nope", name="x")

    assert repository.connection_belongs_to_user(connection_id, user.id)
    assert not repository.connection_belongs_to_user(connection_id, "usr_other")

    assert repository.delete_connection(connection_id)
    assert not repository.delete_connection(connection_id)
    assert repository.get_connection(connection_id) is None
