import base64
import json

import pytest

from dockpack.errors import ConfigurationError
from dockpack.MODELS.auth_config import AuthConfig
from dockpack.UTILS.progress import ConsoleProgressReporter, format_event


@pytest.mark.parametrize("event,expected", [
    ({"stream": "Step 1/3 : FROM alpine\n"}, "Step 1/3 : FROM alpine"),
    ({"stream": "\n"}, None),
    ({"status": "Pushing", "id": "abc123"}, "abc123: Pushing"),
    ({"status": "Digest: sha256:00"}, "Digest: sha256:00"),
    ({"aux": {"ID": "sha256:1"}}, None),
])
def test_format_event(event, expected):
    assert format_event(event) == expected


def test_console_reporter_collapses_layer_progress(capsys):
    reporter = ConsoleProgressReporter()
    reporter.start("Pushing", "app:1")
    reporter.update({"status": "Pushing", "id": "l1", "progress": "[=>   ]"})
    reporter.update({"status": "Pushing", "id": "l1", "progress": "[===> ]"})
    reporter.update({"status": "Pushed", "id": "l1"})
    reporter.finish("Pushing", "app:1")
    assert capsys.readouterr().out.splitlines() == [
        "dockpack: Pushing app:1",
        "dockpack: l1: Pushing",
        "dockpack: l1: Pushed",
        "dockpack: Pushing app:1 finished",
    ]


def _decode(value):
    return json.loads(base64.urlsafe_b64decode(value))


def test_header_value_with_credentials():
    auth = AuthConfig(username="ci", password="pw", email="ci@example.com")
    assert _decode(auth.to_header_value("quay.io")) == {
        "username": "ci",
        "password": "pw",
        "email": "ci@example.com",
        "serveraddress": "quay.io",
    }


def test_header_value_with_identity_token():
    auth = AuthConfig.from_identity_token("tok")
    assert _decode(auth.to_header_value()) == {"identitytoken": "tok"}


def test_credentials_encoded():
    auth = AuthConfig.from_credentials_encoded(base64.b64encode(b"user:pa:ss").decode())
    assert (auth.username, auth.password) == ("user", "pa:ss")
    assert AuthConfig(username="a", password="b").credentials_encoded == base64.b64encode(b"a:b").decode()
    with pytest.raises(ConfigurationError):
        AuthConfig.from_credentials_encoded(base64.b64encode(b"no-separator").decode())
