import pytest
import requests

from wrtcli.error_handling import AuthError, AuthErrorKind
from wrtcli.schemas import Device, TransportType
from wrtcli.session_client import (UBUS_NULL_SESSION, LuciSessionClient, UbusSessionClient,
                                   get_session_client)

from .conftest import make_response


@pytest.fixture
def rest_device():
    return Device(name="ap", ip="10.0.0.2", user="root", password="pw", transport=TransportType.REST)


def test_ubus_login_returns_session_token(settings, device, http):
    http.post.return_value = make_response(json_data={
        "jsonrpc": "2.0", "id": 1,
        "result": [0, {"ubus_rpc_session": "c1ed6c7b025d0caca723a816fa61b668", "timeout": 300}],
    })

    session = UbusSessionClient(settings, http=http).authenticate(device)

    assert session.token == "c1ed6c7b025d0caca723a816fa61b668"
    assert session.transport == TransportType.RPC
    url = http.post.call_args.args[0]
    body = http.post.call_args.kwargs["json"]
    assert url == "http://192.168.1.1/ubus"
    assert body["params"][:3] == [UBUS_NULL_SESSION, "session", "login"]
    assert body["params"][3] == {"username": "root", "password": "secret"}
    assert http.post.call_args.kwargs["timeout"] == settings.request_timeout


@pytest.mark.parametrize("reply", [
    {"jsonrpc": "2.0", "id": 1, "result": [6]},
    {"jsonrpc": "2.0", "id": 1, "error": {"code": -32002, "message": "Access denied"}},
    {"jsonrpc": "2.0", "id": 1, "error": "Access denied"},
])
def test_ubus_login_rejected(settings, device, http, reply):
    http.post.return_value = make_response(json_data=reply)

    with pytest.raises(AuthError) as excinfo:
        UbusSessionClient(settings, http=http).authenticate(device)

    assert excinfo.value.kind == AuthErrorKind.REJECTED


def test_ubus_login_http_error_is_rejected(settings, device, http):
    http.post.return_value = make_response(status_code=403)

    with pytest.raises(AuthError) as excinfo:
        UbusSessionClient(settings, http=http).authenticate(device)

    assert excinfo.value.kind == AuthErrorKind.REJECTED


@pytest.mark.parametrize("reply", [
    {"jsonrpc": "2.0", "id": 1, "result": [0, {}]},
    {"jsonrpc": "2.0", "id": 1, "result": [0]},
    {"jsonrpc": "2.0", "id": 1},
])
def test_ubus_login_without_token_is_malformed(settings, device, http, reply):
    http.post.return_value = make_response(json_data=reply)

    with pytest.raises(AuthError) as excinfo:
        UbusSessionClient(settings, http=http).authenticate(device)

    assert excinfo.value.kind == AuthErrorKind.MALFORMED_RESPONSE


def test_non_json_login_reply_is_malformed(settings, device, http):
    http.post.return_value = make_response(content=b"<html>", headers={"Content-Type": "text/html"})

    with pytest.raises(AuthError) as excinfo:
        UbusSessionClient(settings, http=http).authenticate(device)

    assert excinfo.value.kind == AuthErrorKind.MALFORMED_RESPONSE


@pytest.mark.parametrize("error", [requests.ConnectionError("refused"), requests.Timeout("slow")])
def test_network_failures_are_unreachable(settings, device, http, error):
    http.post.side_effect = error

    with pytest.raises(AuthError) as excinfo:
        UbusSessionClient(settings, http=http).authenticate(device)

    assert excinfo.value.kind == AuthErrorKind.UNREACHABLE


def test_luci_login_returns_token(settings, rest_device, http):
    http.post.return_value = make_response(json_data={"id": 1, "result": "0123456789abcdef", "error": None})

    session = LuciSessionClient(settings, http=http).authenticate(rest_device)

    assert session.token == "0123456789abcdef"
    assert session.transport == TransportType.REST
    assert http.post.call_args.args[0] == "http://10.0.0.2/cgi-bin/luci/rpc/auth"
    assert http.post.call_args.kwargs["json"]["params"] == ["root", "pw"]


def test_luci_login_null_result_is_rejected(settings, rest_device, http):
    http.post.return_value = make_response(json_data={"id": 1, "result": None, "error": None})

    with pytest.raises(AuthError) as excinfo:
        LuciSessionClient(settings, http=http).authenticate(rest_device)

    assert excinfo.value.kind == AuthErrorKind.REJECTED


def test_luci_login_without_result_is_malformed(settings, rest_device, http):
    http.post.return_value = make_response(json_data={"id": 1})

    with pytest.raises(AuthError) as excinfo:
        LuciSessionClient(settings, http=http).authenticate(rest_device)

    assert excinfo.value.kind == AuthErrorKind.MALFORMED_RESPONSE


def test_factory_follows_device_transport(settings, device, rest_device):
    assert isinstance(get_session_client(device, settings), UbusSessionClient)
    assert isinstance(get_session_client(rest_device, settings), LuciSessionClient)
