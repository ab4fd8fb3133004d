"""
auth/exchange.py -- Mini-app login code exchange.

The mini-app client obtains a one-time login code from the platform and sends
it to us. MiniProgramExchanger trades that code for the durable identity the
platform assigns this user inside our app:

    GET {login_url}?appid=...&secret=...&js_code=<code>&grant_type=authorization_code

    success: {"openid": "...", "unionid": "...", "session_key": "..."}
    failure: {"errcode": 40029, "errmsg": "invalid code"}

Failure mapping:
  NotConfigured       -- app id or secret missing; no request is sent.
  ExchangeUnavailable -- transport error, timeout, non-2xx, or unparseable body.
  ExchangeFailed      -- the provider answered with a non-zero errcode, or
                         with no openid at all.

One outbound call per exchange with a bounded timeout. No retries here; a
caller that wants retries owns that policy.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import requests

from auth.errors import ExchangeFailed, ExchangeUnavailable, NotConfigured
from auth.models import ExternalIdentity

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("scaffold.auth.exchange")

_GRANT_TYPE = "authorization_code"


class MiniProgramExchanger:
    def __init__(
        self,
        app_id: str,
        app_secret: str,
        login_url: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._app_id = app_id
        self._app_secret = app_secret
        self.login_url = login_url
        self.timeout = timeout
        if session is None:
            session = requests.Session()
            # Known endpoint; a long redirect chain is never legitimate here.
            session.max_redirects = 3
        self._session = session

    @classmethod
    def from_settings(cls, settings: Settings, session: requests.Session | None = None) -> MiniProgramExchanger:
        return cls(
            app_id=settings.miniprogram_app_id,
            app_secret=settings.miniprogram_app_secret,
            login_url=settings.miniprogram_login_url,
            timeout=settings.exchange_timeout_seconds,
            session=session,
        )

    @property
    def configured(self) -> bool:
        return bool(self._app_id and self._app_secret)

    def exchange(self, code: str) -> ExternalIdentity:
        """Trade a one-time login code for (external_id, union_id, session secret)."""
        if not self.configured:
            raise NotConfigured()

        params = {
            "appid": self._app_id,
            "secret": self._app_secret,
            "js_code": code,
            "grant_type": _GRANT_TYPE,
        }
        try:
            resp = self._session.get(self.login_url, params=params, timeout=self.timeout)
            resp.raise_for_status()
            # The platform answers with JSON under a text/plain content type.
            data = resp.json()
        except requests.RequestException as exc:
            logger.warning("Identity provider request failed: %s", exc.__class__.__name__)
            raise ExchangeUnavailable() from exc
        except ValueError as exc:
            logger.warning("Identity provider returned a non-JSON body")
            raise ExchangeUnavailable("Identity provider returned an unreadable response.") from exc

        if not isinstance(data, dict):
            raise ExchangeUnavailable("Identity provider returned an unreadable response.")

        errcode = data.get("errcode")
        if errcode:
            logger.warning("Identity provider rejected code: errcode=%s errmsg=%s", errcode, data.get("errmsg"))
            raise ExchangeFailed(errcode, data.get("errmsg"))

        openid = data.get("openid")
        if not openid:
            raise ExchangeFailed(None, "response did not include an openid")

        return ExternalIdentity(
            external_id=openid,
            external_union_id=data.get("unionid") or None,
            session_secret=data.get("session_key"),
        )
