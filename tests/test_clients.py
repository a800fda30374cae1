import json
from unittest import mock

import pytest
import requests

from aria2_client import Aria2Client, Aria2Error
from ct2aria_core import FILE_KIND_FOLDER, JOB_ERROR, RemoteFile, WalkAborted
from ctfile_client import API_ENDPOINT, CtfileClient, CtfileError, match1, value_from_html


def _response(payload, status_code=200, bom=False):
    response = requests.Response()
    response.status_code = status_code
    body = json.dumps(payload).encode("utf-8")
    response._content = (b"\xef\xbb\xbf" + body) if bom else body
    return response


def _share(folder_id, name, url):
    return {"userid": 1, "folder_id": folder_id, "folder_name": name, "url": url}


def _file_row(file_id, name, size="1 MB"):
    return [
        '<input type="checkbox" name="file_ids[]" value="x">',
        f'<a href="/file/{file_id}">{name}</a>',
        size,
        "2020-01-01",
    ]


def _folder_row(folder_id, name):
    return [
        f'<input type="checkbox" name="folder_ids[]" value="{folder_id}">',
        f'<a href="javascript:;">{name}</a>',
        "-",
        "2020-01-01",
    ]


class FakeCtfile:
    """Routes ctfile GETs to canned listings."""

    def __init__(self, shares, listings, files=None):
        self.shares = shares
        self.listings = listings
        self.files = files or {}
        self.requests = []

    def __call__(self, url, params=None, headers=None, timeout=None):
        self.requests.append((url, dict(params or {})))
        if url.endswith("/getdir.php"):
            return _response(self.shares[params["folder_id"]], bom=True)
        if url.endswith("/getfile.php"):
            return _response(self.files[params["f"]])
        return _response({"aaData": self.listings[url]})


@pytest.fixture
def tree():
    return FakeCtfile(
        shares={"": _share(10, "top", "/list/10"), "20": _share(20, "sub", "/list/20")},
        listings={
            f"{API_ENDPOINT}/list/10": [_file_row("f1", "one.bin"), _folder_row("20", "sub"), _file_row("f3", "three.bin")],
            f"{API_ENDPOINT}/list/20": [_file_row("f2", "two.bin")],
        },
    )


def _ctfile(handler):
    session = requests.Session()
    session.get = mock.Mock(side_effect=handler)
    return CtfileClient(session=session)


def test_html_helpers():
    assert match1(r"<a.*?>(.*?)</a>", '<a href="/file/x">name.zip</a>') == "name.zip"
    assert match1(r"<b>(.*?)</b>", "nothing") == ""
    assert value_from_html('<input name="folder_ids[]" value="42">', "value") == "42"


def test_walk_is_depth_first_with_folder_prefixes(tree):
    client = _ctfile(tree)
    seen = []

    client.walk("share-1", lambda prefix, file: seen.append((prefix, file.name, file.id)) or True)

    assert seen == [
        ("top", "one.bin", "f1"),
        ("top/sub", "two.bin", "f2"),
        ("top", "three.bin", "f3"),
    ]


def test_walk_raises_aborted_when_callback_stops(tree):
    client = _ctfile(tree)
    seen = []

    with pytest.raises(WalkAborted):
        client.walk("share-1", lambda prefix, file: seen.append(file.name) and False)
    assert seen == ["one.bin"]


def test_parse_files_detects_folders(tree):
    client = _ctfile(tree)
    share = client.get_share_info("share-1")
    files = client.parse_files(share)

    assert [f.name for f in files] == ["one.bin", "sub", "three.bin"]
    assert files[1].kind == FILE_KIND_FOLDER and files[1].id == "20"
    assert files[0].size == "1 MB"


def test_passcode_share_sends_passcode_and_sets_cookie(tree):
    client = _ctfile(tree)
    client.get_share_info("secret@share-1")

    _, params = tree.requests[0]
    assert params == {"folder_id": "", "passcode": "secret", "d": "share-1", "path": "d"}
    assert client.session.cookies.get("pass_d10") == "secret"


def test_non_200_listing_is_an_error():
    client = _ctfile(lambda url, **kwargs: _response({}, status_code=503))
    with pytest.raises(CtfileError, match="503"):
        client.get_share_info("share-1")


def test_resolve_uris_requires_login():
    client = _ctfile(lambda url, **kwargs: _response({}))
    with pytest.raises(CtfileError, match="not login"):
        client.resolve_uris(RemoteFile(id="f1", name="one.bin"))


def test_resolve_uris_collects_mirrors():
    handler = FakeCtfile({}, {}, files={"f1": {
        "code": 200,
        "vip_telecom_url": "https://t.example/one.bin",
        "vip_unicom_url": "https://u.example/one.bin",
        "file_name": "one.bin",
    }})
    client = _ctfile(handler)
    client.set_cookies("cookie-value")

    urls = client.resolve_uris(RemoteFile(id="f1", name="one.bin"))

    assert urls == {"telecom": "https://t.example/one.bin", "unicom": "https://u.example/one.bin"}
    assert client.session.cookies.get("pubcookie") == "cookie-value"


def test_resolve_uris_surfaces_server_message():
    handler = FakeCtfile({}, {}, files={"f1": {"code": 404, "message": "file deleted"}})
    client = _ctfile(handler)
    client.set_cookies("cookie-value")

    with pytest.raises(CtfileError, match="file deleted"):
        client.resolve_uris(RemoteFile(id="f1", name="one.bin"))


def _aria2(*payloads):
    session = requests.Session()
    session.post = mock.Mock(side_effect=[_response(p) for p in payloads])
    return Aria2Client("http://aria2.local/jsonrpc", secret="s3cret", session=session), session.post


def test_submit_sends_token_uris_and_options():
    client, post = _aria2({"jsonrpc": "2.0", "id": "1", "result": "2089b05ecca3d829"})

    gid = client.submit(["https://a", "https://b"], {"out": "top/one.bin", "dir": "/data"})

    assert gid == "2089b05ecca3d829"
    payload = post.call_args.kwargs["json"]
    assert payload["method"] == "aria2.addUri"
    assert payload["params"] == ["token:s3cret", ["https://a", "https://b"], {"out": "top/one.bin", "dir": "/data"}]


def test_poll_maps_status_and_error_message():
    client, post = _aria2({"result": {"gid": "g", "status": "error", "errorMessage": "No URI available."}})

    status = client.poll("g")

    assert status.status == JOB_ERROR
    assert status.error_message == "No URI available."
    assert post.call_args.kwargs["json"]["params"][1] == "g"


def test_rpc_error_raises_aria2_error():
    client, _ = _aria2({"error": {"code": 1, "message": "GID g is not found"}})

    with pytest.raises(Aria2Error) as excinfo:
        client.poll("g")
    assert excinfo.value.code == 1
    assert "not found" in str(excinfo.value)


def test_null_result_is_an_error():
    client, _ = _aria2({"result": None})
    with pytest.raises(Aria2Error, match="null result"):
        client.add_uri(["https://a"])
