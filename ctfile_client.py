# ctfile_client.py
# CTFILE SHARE CLIENT
# Version: 1.0.0

"""
CTFILE SHARE CLIENT
===================
Walks ctfile share listings and resolves files to mirror download URLs.

- ``walk`` visits folders depth-first and calls back once per file
- ``resolve_uris`` turns a file into ``{mirror: url}`` (needs a pub cookie)
"""

import json
import posixpath
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import requests

from ct2aria_core import FILE_KIND_FILE, FILE_KIND_FOLDER, RemoteFile, WalkAborted

API_ENDPOINT = "https://webapi.400gb.com"
API_DOMAIN = "webapi.400gb.com"
ORIGIN = "https://545c.com"

# Connection Timeout
REQUEST_TIMEOUT = 15

# Mirror URL keys in getfile.php responses, e.g. vip_telecom_url
MIRROR_KEY_PATTERN = re.compile(r"vip_(\D*)_url")


class CtfileError(Exception):
    """Unexpected response from the ctfile API."""


@dataclass
class Share:
    """Folder descriptor returned by getdir.php."""
    user_id: int = 0
    folder_id: int = 0
    file_chk: str = ""
    folder_name: str = ""
    folder_time: str = ""
    username: str = ""
    email: str = ""
    url: str = ""
    page_title: str = ""

    @classmethod
    def from_json(cls, data: Dict) -> "Share":
        return cls(
            user_id=int(data.get("userid") or 0),
            folder_id=int(data.get("folder_id") or 0),
            file_chk=data.get("file_chk") or "",
            folder_name=data.get("folder_name") or "",
            folder_time=data.get("folder_time") or "",
            username=data.get("username") or "",
            email=data.get("email") or "",
            url=data.get("url") or "",
            page_title=data.get("page_title") or "",
        )


def match1(pattern: str, text: str) -> str:
    """Return the first capture group of ``pattern`` in ``text``, or ''."""
    match = re.search(pattern, text)
    if not match or match.lastindex is None:
        return ""
    return match.group(1)


def value_from_html(html: str, key: str) -> str:
    return match1(f'{re.escape(key)}="(.*?)"', html)


class CtfileClient:
    """
    Session-backed ctfile client.

    Share ids of the form ``passcode@id`` are unlocked with the passcode;
    the unlock cookie is kept on the session for the rest of the walk.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = REQUEST_TIMEOUT):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.is_login = False

    def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Dict:
        response = self.session.get(url, params=params, headers={"Origin": ORIGIN}, timeout=self.timeout)
        if response.status_code != 200:
            raise CtfileError(f"StatusCode: {response.status_code}")
        # The API prefixes some bodies with a UTF-8 BOM
        return json.loads(response.content.decode("utf-8-sig"))

    def set_cookies(self, pub_cookie: str):
        """Authenticate with a ``pubcookie`` value copied from a browser session."""
        self.session.cookies.set("pubcookie", pub_cookie, domain=API_DOMAIN)
        self.is_login = True

    def get_share_info(self, share_id: str, folder_id: str = "") -> Share:
        """
        Fetch the descriptor of a share folder.

        Args:
            share_id: Share id, optionally ``passcode@id``
            folder_id: Sub-folder id, empty for the share root

        Returns:
            Share descriptor
        """
        params = {"folder_id": folder_id}
        passcode, sep, rest = share_id.partition("@")
        if sep:
            params.update({"passcode": passcode, "d": rest, "path": "d"})
        else:
            passcode = ""
            params["d"] = share_id

        share = Share.from_json(self._get_json(f"{API_ENDPOINT}/getdir.php", params))

        if passcode:
            key = f"pass_d{share.folder_id}"
            if self.session.cookies.get(key, domain=API_DOMAIN) is None:
                self.session.cookies.set(key, passcode, domain=API_DOMAIN)
        return share

    def parse_files(self, share: Share) -> List[RemoteFile]:
        """
        List the entries of a share folder.

        Each ``aaData`` row is ``[checkbox html, link html, size, date, ...]``.
        """
        data = self._get_json(f"{API_ENDPOINT}{share.url}")
        files = []
        for row in data.get("aaData") or []:
            checkbox, link = str(row[0]), str(row[1])
            kind = FILE_KIND_FOLDER if value_from_html(checkbox, "name") == "folder_ids[]" else FILE_KIND_FILE
            if kind == FILE_KIND_FILE:
                file_id = value_from_html(link, "href").replace("/file/", "", 1)
            else:
                file_id = value_from_html(checkbox, "value")
            files.append(RemoteFile(
                id=file_id,
                name=match1(r"<a.*?>(.*?)</a>", link),
                size=str(row[2]) if len(row) > 2 else "",
                date=str(row[3]) if len(row) > 3 else "",
                kind=kind,
            ))
        return files

    def resolve_uris(self, file: RemoteFile) -> Dict[str, str]:
        """
        Resolve a file to its mirror download URLs.

        Returns:
            {mirror: url}; may be empty when the server offers no mirror

        Raises:
            CtfileError: for folders, without a pub cookie, or when the
                server answers with a non-200 code
        """
        if file.kind != FILE_KIND_FILE:
            raise CtfileError("this is not a file")
        if not self.is_login:
            raise CtfileError("not login")

        result = self._get_json(f"{API_ENDPOINT}/getfile.php", {"f": file.id})
        if int(result.get("code") or 0) != 200:
            raise CtfileError(str(result.get("message", "")))

        urls = {}
        for key, value in result.items():
            match = MIRROR_KEY_PATTERN.search(key)
            if match:
                urls[match.group(1)] = str(value)
        return urls

    def walk(self, share_id: str, callback: Callable[[str, RemoteFile], bool], folder_id: str = ""):
        """
        Visit every file below a share, depth-first.

        Args:
            share_id: Share id, optionally ``passcode@id``
            callback: ``callback(path_prefix, file)``; returning False stops the walk
            folder_id: Folder to start from, empty for the share root

        Raises:
            WalkAborted: when the callback returned False
        """
        self._walk(share_id, folder_id, "", callback)

    def _walk(self, share_id: str, folder_id: str, path_prefix: str,
              callback: Callable[[str, RemoteFile], bool]):
        share = self.get_share_info(share_id, folder_id)
        current = posixpath.join(path_prefix, share.folder_name)
        for file in self.parse_files(share):
            if file.is_folder:
                self._walk(share_id, file.id, current, callback)
            elif not callback(current, file):
                raise WalkAborted(f"walk of {share_id} aborted at {posixpath.join(current, file.name)}")
