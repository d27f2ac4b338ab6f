import io
import json
import sys
from types import SimpleNamespace
from urllib.error import URLError

import pytest

from dockpack.AUTH.aws_credentials import (
    AwsCredentials,
    ChainCredentialsProvider,
    EcsMetadataCredentialsProvider,
    EnvironmentCredentialsProvider,
    SdkCredentialsProvider,
    StaticCredentialsProvider,
    default_credentials_chain,
)
from dockpack.errors import CredentialError


class _Opener:
    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error
        self.urls = []

    def __call__(self, request, timeout=None):
        self.urls.append(request.full_url)
        if self.error is not None:
            raise self.error
        return io.BytesIO(self.payload.encode("utf-8"))


class _Session:
    def __init__(self, credentials):
        self.credentials = credentials

    def get_credentials(self):
        return self.credentials


def test_repr_masks_secret():
    text = repr(AwsCredentials("AKID", "very-secret", "token"))
    assert "AKID" in text
    assert "very-secret" not in text


def test_environment_provider():
    provider = EnvironmentCredentialsProvider({
        "AWS_ACCESS_KEY_ID": "AKID", "AWS_SECRET_ACCESS_KEY": "secret", "AWS_SESSION_TOKEN": "token",
    })
    assert provider.resolve() == AwsCredentials("AKID", "secret", "token")


def test_environment_provider_needs_both_keys():
    assert EnvironmentCredentialsProvider({"AWS_ACCESS_KEY_ID": "AKID"}).resolve() is None


def test_ecs_provider_only_with_relative_uri():
    opener = _Opener("{}")
    assert EcsMetadataCredentialsProvider({}, opener=opener).resolve() is None
    assert opener.urls == []


def test_ecs_provider_reads_task_credentials():
    opener = _Opener(json.dumps({"AccessKeyId": "AKID", "SecretAccessKey": "secret", "Token": "token"}))
    provider = EcsMetadataCredentialsProvider(
        {"AWS_CONTAINER_CREDENTIALS_RELATIVE_URI": "/v2/credentials/abc"}, opener=opener
    )
    assert provider.resolve() == AwsCredentials("AKID", "secret", "token")
    assert opener.urls == ["http://169.254.170.2/v2/credentials/abc"]


def test_ecs_provider_endpoint_override():
    opener = _Opener(json.dumps({"AccessKeyId": "AKID", "SecretAccessKey": "secret"}))
    environ = {"AWS_CONTAINER_CREDENTIALS_RELATIVE_URI": "creds", "ECS_METADATA_ENDPOINT": "http://localhost:9000/"}
    EcsMetadataCredentialsProvider(environ, opener=opener).resolve()
    assert opener.urls == ["http://localhost:9000/creds"]


def test_ecs_provider_unreachable(caplog):
    provider = EcsMetadataCredentialsProvider(
        {"AWS_CONTAINER_CREDENTIALS_RELATIVE_URI": "/creds"}, opener=_Opener(error=URLError("down"))
    )
    assert provider.resolve() is None
    assert "not reachable" in caplog.text


def test_ecs_provider_invalid_document():
    provider = EcsMetadataCredentialsProvider(
        {"AWS_CONTAINER_CREDENTIALS_RELATIVE_URI": "/creds"}, opener=_Opener("not json")
    )
    with pytest.raises(CredentialError):
        provider.resolve()


def test_sdk_provider_with_session():
    frozen = SimpleNamespace(access_key="AKID", secret_key="secret", token=None)
    credentials = SimpleNamespace(get_frozen_credentials=lambda: frozen)
    assert SdkCredentialsProvider(_Session(credentials)).resolve() == AwsCredentials("AKID", "secret")
    assert SdkCredentialsProvider(_Session(None)).resolve() is None


def test_sdk_provider_without_boto3(monkeypatch):
    monkeypatch.setitem(sys.modules, "boto3", None)
    with pytest.raises(CredentialError) as exc:
        SdkCredentialsProvider().resolve()
    assert "boto3" in str(exc.value)


def test_chain_first_wins():
    first = AwsCredentials("A", "a")
    chain = ChainCredentialsProvider([
        StaticCredentialsProvider(None),
        StaticCredentialsProvider(first),
        StaticCredentialsProvider(AwsCredentials("B", "b")),
    ])
    assert chain.resolve() is first
    assert ChainCredentialsProvider([]).resolve() is None


def test_default_chain_composition():
    assert [type(p) for p in default_credentials_chain({}).providers] == [
        EnvironmentCredentialsProvider, EcsMetadataCredentialsProvider,
    ]
    assert isinstance(default_credentials_chain({}, use_sdk=True).providers[-1], SdkCredentialsProvider)
