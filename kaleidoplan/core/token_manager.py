#!/usr/bin/env python3
"""
🎟️ Spotify token lifecycle for Kaleidoplan
Owns the token bundle: client-credentials exchange for the app identity,
interactive sign-in for the user identity, silent refresh and expiry-based
reuse. Concurrent callers share one in-flight exchange.

Two interchangeable user grants implement the same contract:
- AuthorizationCodeTokenManager: code + refresh token, persisted state nonce
- ImplicitGrantTokenManager: short-lived token from the redirect fragment
"""

import asyncio
import inspect
import logging
import secrets
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import parse_qs, urlparse

from ..api.oauth import OAuthClient, TokenResponse
from ..constants import (KEY_ACCESS_TOKEN, KEY_AUTH_STATE, KEY_EXPIRES_AT,
                         KEY_REFRESH_TOKEN, KEY_USER_AUTHENTICATED,
                         TOKEN_EXPIRY_MARGIN_MS, USER_SCOPES)
from ..errors import AuthExchangeError, AuthStateMismatch
from ..utils.single_flight import SingleFlight
from .auth_dialog import AuthorizationDialog
from .models import TokenBundle
from .token_store import TokenStore

_ALL_KEYS = (KEY_ACCESS_TOKEN, KEY_REFRESH_TOKEN, KEY_EXPIRES_AT, KEY_USER_AUTHENTICATED, KEY_AUTH_STATE)
_FLIGHT_KEY = "token.exchange"

DisconnectListener = Callable[[], Any]


class TokenManager:
    """
    Base token manager: app identity, refresh, reuse and disconnect.

    Subclasses provide the interactive user grant through ``response_type``
    and ``_token_from_redirect``.
    """

    response_type = ""

    def __init__(
        self,
        oauth: OAuthClient,
        store: TokenStore,
        *,
        redirect_uri: str,
        dialog: Optional[AuthorizationDialog] = None,
        scopes: Iterable[str] = USER_SCOPES,
        show_dialog: bool = True,
        dialog_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        expiry_margin_ms: int = TOKEN_EXPIRY_MARGIN_MS,
    ) -> None:
        self._oauth = oauth
        self._store = store
        self.redirect_uri = redirect_uri
        self._dialog = dialog
        self.scopes = tuple(scopes)
        self.show_dialog = show_dialog
        self.dialog_timeout = dialog_timeout
        self._clock = clock
        self._margin_ms = expiry_margin_ms

        self._bundle = TokenBundle.empty()
        self._loaded = False
        self._flight = SingleFlight("token")
        self._disconnect_listeners: List[DisconnectListener] = []
        self._logger = logging.getLogger("kaleidoplan.token")

        self._metrics = {
            'cache_hits': 0,
            'cache_misses': 0,
            'exchanges': 0,
            'exchange_failures': 0,
            'refresh_attempts': 0,
            'refresh_successes': 0,
            'refresh_failures': 0,
            'total_requests': 0,
        }

    # ------------------------------------------------------------------ state

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def bundle(self) -> TokenBundle:
        return self._bundle

    async def restore(self) -> None:
        """Load the persisted bundle once; an inconsistent user bundle is discarded."""
        if self._loaded:
            return
        await self._flight.run("token.restore", self._restore_once)

    async def _restore_once(self) -> None:
        if self._loaded:
            return
        try:
            stored = await self._store.load()
        except OSError as exc:
            self._logger.warning("token.restore.failed", extra={"error": str(exc)})
            return
        finally:
            self._loaded = True

        bundle = TokenBundle.from_storage(stored)
        if bundle.is_empty:
            return
        if not bundle.is_consistent:
            self._logger.info("token.restore.discarded", extra={"reason": "user bundle without refresh token"})
            await self._clear(keep_state=True)
            return
        self._bundle = bundle
        self._logger.debug(
            "token.restore.ok",
            extra={"user_authenticated": bundle.user_authenticated, "expires_at": bundle.expires_at_epoch_ms},
        )

    def is_user_authenticated(self) -> bool:
        bundle = self._bundle
        if not bundle.user_authenticated or bundle.is_empty:
            return False
        # an expired implicit token is gone for good
        return bool(bundle.refresh_token) or bundle.is_valid(self._now_ms(), self._margin_ms)

    async def _persist(self, bundle: TokenBundle) -> None:
        """Write the bundle to storage, then adopt it in memory."""
        try:
            await self._store.save(bundle.to_storage())
        except OSError as exc:
            self._logger.error("token.persist.failed", extra={"error": str(exc)})
        self._bundle = bundle

    async def _clear(self, keep_state: bool = False) -> None:
        self._bundle = TokenBundle.empty()
        keys = [key for key in _ALL_KEYS if not (keep_state and key == KEY_AUTH_STATE)]
        try:
            await self._store.remove(keys)
        except OSError as exc:
            self._logger.error("token.clear.failed", extra={"error": str(exc)})

    def _bundle_from(self, token: TokenResponse, user_authenticated: bool) -> TokenBundle:
        return TokenBundle(
            access_token=token.access_token,
            refresh_token=token.refresh_token if user_authenticated else None,
            expires_at_epoch_ms=self._now_ms() + int(token.expires_in) * 1000,
            user_authenticated=user_authenticated,
        )

    # --------------------------------------------------------------- contract

    async def authenticate(self) -> Optional[str]:
        """Return a valid access token, exchanging or refreshing as needed.

        Returns:
            Access token, or None if no token could be obtained
        """
        await self.restore()
        self._metrics['total_requests'] += 1

        if self._bundle.is_valid(self._now_ms(), self._margin_ms):
            self._metrics['cache_hits'] += 1
            return self._bundle.access_token

        self._metrics['cache_misses'] += 1
        return await self._flight.run(_FLIGHT_KEY, self._authenticate_once)

    async def _authenticate_once(self) -> Optional[str]:
        if self._bundle.is_valid(self._now_ms(), self._margin_ms):
            return self._bundle.access_token

        if self._bundle.user_authenticated and self._bundle.refresh_token:
            token = await self._refresh_once()
            if token:
                return token
            # refresh cleared the bundle; fall back to the app identity

        return await self._client_credentials_once()

    async def _client_credentials_once(self) -> Optional[str]:
        try:
            token = await self._oauth.client_credentials()
        except AuthExchangeError as exc:
            # transient app failure: keep whatever bundle we have, retry next call
            self._metrics['exchange_failures'] += 1
            self._logger.warning("token.app.failed", extra={"status": exc.status, "error": exc.message})
            return None

        self._metrics['exchanges'] += 1
        bundle = self._bundle_from(token, user_authenticated=False)
        await self._persist(bundle)
        self._logger.info("token.app.ok", extra={"expires_in": token.expires_in})
        return bundle.access_token

    async def refresh(self) -> bool:
        """Refresh the user token; a failed refresh clears the bundle."""
        await self.restore()
        token = await self._flight.run(_FLIGHT_KEY, self._refresh_once)
        return token is not None and self._bundle.user_authenticated

    async def _refresh_once(self) -> Optional[str]:
        refresh_token = self._bundle.refresh_token
        if not refresh_token:
            self._logger.debug("token.refresh.skip", extra={"reason": "no refresh token"})
            return None

        self._metrics['refresh_attempts'] += 1
        try:
            token = await self._oauth.refresh(refresh_token)
        except AuthExchangeError as exc:
            self._metrics['refresh_failures'] += 1
            self._logger.warning("token.refresh.failed", extra={"status": exc.status, "error": exc.message})
            await self._clear()
            return None

        self._metrics['refresh_successes'] += 1
        bundle = self._bundle_from(token, user_authenticated=True)
        await self._persist(bundle)
        self._logger.info("token.refresh.ok", extra={"expires_in": token.expires_in})
        return bundle.access_token

    def add_disconnect_listener(self, listener: DisconnectListener) -> None:
        self._disconnect_listeners.append(listener)

    def remove_disconnect_listener(self, listener: DisconnectListener) -> None:
        if listener in self._disconnect_listeners:
            self._disconnect_listeners.remove(listener)

    async def disconnect(self) -> None:
        """Forget the bundle in memory and storage and tear down listeners' sessions."""
        await self._clear()
        self._loaded = True
        for listener in list(self._disconnect_listeners):
            try:
                result = listener()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self._logger.warning("token.disconnect.listener_failed", extra={"error": str(exc)})
        self._logger.info("token.disconnect.ok")

    # ------------------------------------------------------- interactive login

    def authorization_url(self, state: Optional[str] = None) -> str:
        return self._oauth.authorize_url(
            response_type=self.response_type,
            redirect_uri=self.redirect_uri,
            scopes=self.scopes,
            state=state,
            show_dialog=self.show_dialog,
        )

    async def _open_dialog(self, url: str) -> Optional[str]:
        if self._dialog is None:
            self._logger.error("token.login.no_dialog")
            return None
        try:
            if self.dialog_timeout:
                return await asyncio.wait_for(self._dialog.open(url), self.dialog_timeout)
            return await self._dialog.open(url)
        except asyncio.TimeoutError:
            self._logger.info("token.login.timeout", extra={"timeout": self.dialog_timeout})
            return None

    async def login(self) -> bool:
        """Run the interactive grant; a declined or cancelled dialog yields False."""
        await self.restore()
        state = secrets.token_urlsafe(16)
        try:
            await self._store.set(KEY_AUTH_STATE, state)
        except OSError as exc:
            self._logger.error("token.login.state_persist_failed", extra={"error": str(exc)})
            return False

        redirect = await self._open_dialog(self.authorization_url(state))
        if redirect is None:
            self._logger.info("token.login.cancelled")
            return False
        return await self.complete_login(redirect)

    async def complete_login(self, redirect_url: str) -> bool:
        """Finish sign-in from the redirect the authorization server sent back."""
        await self.restore()
        params = self._redirect_params(redirect_url)
        if params.get("error"):
            self._logger.info("token.login.denied", extra={"error": params["error"]})
            await self._store.remove([KEY_AUTH_STATE])
            return False
        try:
            await self._check_state(params.get("state"))
            # never join an app-identity exchange; queue behind it instead
            await self._flight.wait_idle(_FLIGHT_KEY)
            token = await self._flight.run(_FLIGHT_KEY, lambda: self._token_from_redirect(params))
        except (AuthStateMismatch, AuthExchangeError) as exc:
            self._metrics['exchange_failures'] += 1
            self._logger.warning("token.login.failed", extra={"error": str(exc)})
            return False
        return token is not None

    async def _check_state(self, received: Optional[str]) -> None:
        expected = await self._store.get(KEY_AUTH_STATE)
        await self._store.remove([KEY_AUTH_STATE])
        if not expected or not received or not secrets.compare_digest(str(expected), str(received)):
            raise AuthStateMismatch("Authorization state does not match")

    def _redirect_params(self, redirect_url: str) -> Dict[str, str]:
        raise NotImplementedError

    async def _token_from_redirect(self, params: Dict[str, str]) -> Optional[str]:
        raise NotImplementedError

    # ---------------------------------------------------------------- metrics

    def get_cache_info(self) -> Dict[str, Any]:
        """
        Get token cache status and performance metrics.

        Returns:
            Dict[str, Any]: Cache status and metrics
        """
        info: Dict[str, Any] = {
            'grant': self.response_type or 'client_credentials',
            'cache_metrics': self._metrics.copy(),
            'has_cached_token': not self._bundle.is_empty,
            'user_authenticated': self.is_user_authenticated(),
            'exchange_in_flight': self._flight.in_flight(_FLIGHT_KEY),
            'performance': {},
        }

        total = self._metrics['cache_hits'] + self._metrics['cache_misses']
        if total > 0:
            info['performance']['cache_hit_rate_percent'] = round(self._metrics['cache_hits'] / total * 100, 1)
        if self._metrics['refresh_attempts'] > 0:
            rate = self._metrics['refresh_successes'] / self._metrics['refresh_attempts'] * 100
            info['performance']['refresh_success_rate_percent'] = round(rate, 1)

        if not self._bundle.is_empty:
            remaining = max(0, (self._bundle.expires_at_epoch_ms - self._now_ms()) // 1000)
            info['token_info'] = {
                'time_until_expiry_seconds': remaining,
                'time_until_expiry_minutes': remaining // 60,
                'is_expired': not self._bundle.is_valid(self._now_ms(), self._margin_ms),
                'expires_at': datetime.fromtimestamp(self._bundle.expires_at_epoch_ms / 1000).strftime("%Y-%m-%d %H:%M:%S"),
            }
        return info


class AuthorizationCodeTokenManager(TokenManager):
    """Authorization-code grant: one-time code exchanged for access + refresh tokens."""

    response_type = "code"

    def _redirect_params(self, redirect_url: str) -> Dict[str, str]:
        query = parse_qs(urlparse(redirect_url).query)
        return {key: values[0] for key, values in query.items() if values}

    async def _token_from_redirect(self, params: Dict[str, str]) -> Optional[str]:
        code = params.get("code")
        if not code:
            raise AuthExchangeError("Authorization redirect carried no code", grant_type="authorization_code")

        token = await self._oauth.exchange_code(code, self.redirect_uri)
        if not token.refresh_token:
            raise AuthExchangeError("Code exchange returned no refresh token", grant_type="authorization_code")

        self._metrics['exchanges'] += 1
        bundle = self._bundle_from(token, user_authenticated=True)
        await self._persist(bundle)
        self._logger.info("token.login.ok", extra={"grant": "authorization_code", "expires_in": token.expires_in})
        return bundle.access_token


class ImplicitGrantTokenManager(TokenManager):
    """Implicit grant: short-lived token in the redirect fragment, no refresh token.

    When the token lapses the dialog has to run again; until then
    ``authenticate()`` falls back to the app identity.
    """

    response_type = "token"

    def _redirect_params(self, redirect_url: str) -> Dict[str, str]:
        parsed = urlparse(redirect_url)
        # errors come back in the query, tokens in the fragment
        merged = {**parse_qs(parsed.query), **parse_qs(parsed.fragment)}
        return {key: values[0] for key, values in merged.items() if values}

    async def _token_from_redirect(self, params: Dict[str, str]) -> Optional[str]:
        access_token = params.get("access_token")
        if not access_token:
            raise AuthExchangeError("Authorization redirect carried no access token", grant_type="implicit")
        try:
            expires_in = int(params.get("expires_in", 3600))
        except ValueError:
            expires_in = 3600

        token = TokenResponse(access_token=access_token, expires_in=expires_in, token_type=params.get("token_type"))
        self._metrics['exchanges'] += 1
        bundle = self._bundle_from(token, user_authenticated=True)
        await self._persist(bundle)
        self._logger.info("token.login.ok", extra={"grant": "implicit", "expires_in": expires_in})
        return bundle.access_token

    async def refresh(self) -> bool:
        """No refresh token exists for this grant."""
        return False


def create_token_manager(grant: str, oauth: OAuthClient, store: TokenStore, **kwargs: Any) -> TokenManager:
    if grant == "implicit":
        return ImplicitGrantTokenManager(oauth, store, **kwargs)
    if grant == "authorization_code":
        return AuthorizationCodeTokenManager(oauth, store, **kwargs)
    raise ValueError(f"Unknown grant: {grant}")
