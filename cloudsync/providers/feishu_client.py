from __future__ import annotations

import json
import time
from pathlib import Path
from typing import IO, Any
from urllib.parse import urlencode

import requests

BASE = "https://open.feishu.cn/open-apis"

# rate limiting and internal errors worth retrying
TRANSIENT_CODES = {99991400, 99991663, 1061045, 1062507, 90217}
# the token no longer exists
GONE_CODES = {1061007}


class FeishuApiError(RuntimeError):
    def __init__(self, message: str, code: int | None = None, status: int | None = None):
        super().__init__(message)
        self.code = code
        self.status = status

    @property
    def transient(self) -> bool:
        return self.code in TRANSIENT_CODES or (self.status or 0) >= 500 or self.status == 429

    @property
    def gone(self) -> bool:
        return self.code in GONE_CODES or self.status == 404


class FeishuClient:
    def __init__(self, app_id: str, app_secret: str, user_token_file: str, timeout: int = 30):
        self.app_id = app_id or ""
        self.app_secret = app_secret or ""
        self.user_token_file = user_token_file or ""
        self.timeout = timeout

    # -- tokens ---------------------------------------------------------

    def _load_user_tokens(self) -> dict[str, Any] | None:
        if not self.user_token_file:
            return None
        p = Path(self.user_token_file).expanduser()
        if not p.exists():
            return None
        payload = json.loads(p.read_text(encoding="utf-8"))
        if isinstance(payload, dict):
            return payload
        return None

    def _save_user_tokens(self, data: dict[str, Any]) -> None:
        if not self.user_token_file:
            return
        p = Path(self.user_token_file).expanduser()
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    def create_oauth_authorize_url(self, redirect_uri: str, state: str) -> str:
        if not self.app_id:
            raise RuntimeError("app_id_missing")
        if not redirect_uri:
            raise RuntimeError("redirect_uri_missing")
        query = urlencode({"app_id": self.app_id, "redirect_uri": redirect_uri, "state": state})
        return f"{BASE}/authen/v1/index?{query}"

    def exchange_code_for_user_token(self, code: str) -> dict[str, Any]:
        if not self.app_id or not self.app_secret:
            raise RuntimeError("auth_incomplete")
        code_text = (code or "").strip()
        if not code_text:
            raise RuntimeError("oauth_code_missing")

        res = requests.post(
            f"{BASE}/authen/v1/access_token",
            json={
                "grant_type": "authorization_code",
                "code": code_text,
                "app_id": self.app_id,
                "app_secret": self.app_secret,
            },
            timeout=self.timeout,
        )
        token_data = self._check_data(res)
        token_data["created_at"] = int(time.time() * 1000)
        self._save_user_tokens(token_data)
        return token_data

    def _refresh_user_tokens(self, refresh_token: str) -> dict[str, Any] | None:
        refresh = (refresh_token or "").strip()
        if not refresh or not self.app_id or not self.app_secret:
            return None

        res = requests.post(
            f"{BASE}/authen/v1/refresh_access_token",
            json={
                "grant_type": "refresh_token",
                "refresh_token": refresh,
                "app_id": self.app_id,
                "app_secret": self.app_secret,
            },
            timeout=self.timeout,
        )
        payload_raw = res.json()
        payload = payload_raw if isinstance(payload_raw, dict) else {}
        if payload.get("code") != 0:
            return None

        refreshed_raw = payload.get("data", {}) or {}
        refreshed = refreshed_raw if isinstance(refreshed_raw, dict) else {}
        refreshed["created_at"] = int(time.time() * 1000)
        self._save_user_tokens(refreshed)
        return refreshed

    def _user_access_token(self) -> str | None:
        tokens = self._load_user_tokens()
        if not tokens:
            return None

        access_token = tokens.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            return None
        created = int(tokens.get("created_at", 0))
        expires_in = int(tokens.get("expires_in", 7200))
        expire_at = created + max(expires_in - 300, 300) * 1000
        if created and int(time.time() * 1000) < expire_at:
            return access_token

        refreshed = self._refresh_user_tokens(str(tokens.get("refresh_token") or ""))
        if not refreshed:
            return None
        return refreshed.get("access_token")

    def _tenant_access_token(self) -> str | None:
        if not self.app_id or not self.app_secret:
            return None
        res = requests.post(
            f"{BASE}/auth/v3/tenant_access_token/internal",
            json={"app_id": self.app_id, "app_secret": self.app_secret},
            timeout=self.timeout,
        )
        data_raw = res.json()
        data = data_raw if isinstance(data_raw, dict) else {}
        if data.get("code") != 0:
            return None
        token = data.get("tenant_access_token")
        if isinstance(token, str) and token:
            return token
        return None

    def get_access_token(self) -> str:
        token = self._user_access_token() or self._tenant_access_token()
        if not token:
            raise FeishuApiError("no_token")
        return token

    def _auth_headers(self, content_type: str | None = "application/json") -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.get_access_token()}"}
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def _check_data(self, res: requests.Response) -> dict[str, Any]:
        try:
            payload = res.json()
        except ValueError:
            raise FeishuApiError(f"invalid_response_status_{res.status_code}", status=res.status_code) from None
        if not isinstance(payload, dict):
            raise FeishuApiError("invalid_response", status=res.status_code)
        if payload.get("code", 0) != 0:
            raise FeishuApiError(
                f"feishu_error: code={payload.get('code')} msg={payload.get('msg')}",
                code=payload.get("code"),
                status=res.status_code,
            )
        data = payload.get("data", {}) or {}
        if not isinstance(data, dict):
            raise FeishuApiError("invalid_response_data", status=res.status_code)
        return data

    # -- drive ----------------------------------------------------------

    def get_root_folder_token(self) -> str:
        res = requests.get(f"{BASE}/drive/explorer/v2/root_folder/meta", headers=self._auth_headers(), timeout=self.timeout)
        token = self._check_data(res).get("token")
        if not isinstance(token, str) or not token:
            raise FeishuApiError("root_folder_token_missing")
        return token

    def list_folder_once(self, folder_token: str) -> list[dict[str, Any]]:
        page_token: str | None = None
        items: list[dict[str, Any]] = []
        while True:
            params: dict[str, str | int] = {"page_size": 200, "folder_token": folder_token}
            if page_token:
                params["page_token"] = page_token
            res = requests.get(f"{BASE}/drive/v1/files", params=params, headers=self._auth_headers(), timeout=self.timeout)
            data = self._check_data(res)
            files = data.get("files", []) or []
            items.extend(item for item in files if isinstance(item, dict))
            next_page = data.get("next_page_token") if data.get("has_more", True) else None
            page_token = str(next_page) if next_page else None
            if not page_token:
                break
        return items

    def create_folder(self, name: str, folder_token: str) -> str:
        res = requests.post(
            f"{BASE}/drive/v1/files/create_folder",
            json={"name": name, "folder_token": folder_token},
            headers=self._auth_headers(),
            timeout=self.timeout,
        )
        token = self._check_data(res).get("token")
        if not isinstance(token, str) or not token:
            raise FeishuApiError("create_folder_no_token")
        return token

    def upload_file(self, fp: IO[bytes], size: int, file_name: str, folder_token: str) -> str:
        data = {
            "file_name": file_name,
            "parent_type": "explorer",
            "parent_node": folder_token,
            "size": str(size),
        }
        res = requests.post(
            f"{BASE}/drive/v1/files/upload_all",
            headers=self._auth_headers(content_type=None),
            data=data,
            files={"file": (file_name, fp, "application/octet-stream")},
            timeout=self.timeout,
        )
        body = self._check_data(res)
        token = body.get("file_token") or body.get("token")
        if not token:
            raise FeishuApiError("upload_no_file_token")
        return str(token)

    def download_file(self, file_token: str, sink: IO[bytes]) -> None:
        url = f"{BASE}/drive/v1/files/{file_token}/download"
        with requests.get(url, headers=self._auth_headers(content_type=None), timeout=self.timeout, stream=True) as res:
            if res.status_code >= 400:
                raise FeishuApiError(f"download_failed_status_{res.status_code}", status=res.status_code)
            for chunk in res.iter_content(chunk_size=1024 * 64):
                if chunk:
                    sink.write(chunk)

    def copy_file(self, file_token: str, name: str, folder_token: str) -> str:
        res = requests.post(
            f"{BASE}/drive/v1/files/{file_token}/copy",
            json={"name": name, "type": "file", "folder_token": folder_token},
            headers=self._auth_headers(),
            timeout=self.timeout,
        )
        data = self._check_data(res)
        copied = data.get("file", {}) if isinstance(data.get("file"), dict) else {}
        return str(copied.get("token") or "")

    def move_file(self, file_token: str, file_type: str, folder_token: str) -> None:
        res = requests.post(
            f"{BASE}/drive/v1/files/{file_token}/move",
            json={"type": file_type or "file", "folder_token": folder_token},
            headers=self._auth_headers(),
            timeout=self.timeout,
        )
        self._check_data(res)

    def delete_file(self, file_token: str, file_type: str) -> None:
        res = requests.delete(
            f"{BASE}/drive/v1/files/{file_token}",
            params={"type": file_type or "file"},
            headers=self._auth_headers(),
            timeout=self.timeout,
        )
        self._check_data(res)
