"""MyAnimeList OAuth2 authorization-code flow (PKCE, plain method)."""

import logging
import secrets
import threading
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from .http_retry import APIError, AuthError, send_with_retry

logger = logging.getLogger(__name__)

MAL_AUTH_URL = "https://myanimelist.net/v1/oauth2/authorize"
MAL_TOKEN_URL = "https://myanimelist.net/v1/oauth2/token"


class MALAuthError(Exception):
    """The authorization flow could not be completed."""

    pass


def new_code_verifier() -> str:
    """Generate a PKCE code verifier (43-128 unreserved characters)."""
    return secrets.token_urlsafe(96)[:128]


def parse_redirect(redirect: str, expected_state: str | None = None) -> str:
    """Extract the authorization code from the redirect URL.

    A bare code is accepted as-is.

    Args:
        redirect: Redirect URL pasted by the user, or the code itself.
        expected_state: State sent with the authorization request.

    Returns:
        The authorization code.

    Raises:
        MALAuthError: If the code is missing or the state does not match.
    """
    redirect = redirect.strip()
    if not redirect:
        raise MALAuthError("No authorization code given")

    if "://" not in redirect and "?" not in redirect:
        return redirect

    params = parse_qs(urlparse(redirect).query)
    if "error" in params:
        raise MALAuthError(f"Authorization denied: {params['error'][0]}")

    codes = params.get("code")
    if not codes:
        raise MALAuthError("Redirect URL has no 'code' parameter")

    state = params.get("state", [None])[0]
    if expected_state is not None and state != expected_state:
        raise MALAuthError("State mismatch in redirect URL")

    return codes[0].strip()


class MALAuthClient:
    """Token endpoint client. Holds no tokens itself."""

    def __init__(
        self,
        client_id: str,
        client_secret: str | None = None,
        redirect_url: str | None = None,
        http_client: httpx.Client | None = None,
        retries: int = 3,
        timeout: float = 30.0,
        stop_event: threading.Event | None = None,
    ):
        """Initialize the OAuth client.

        Args:
            client_id: MAL API client ID.
            client_secret: MAL API client secret (empty for "other" app types).
            redirect_url: Redirect URL registered with the app.
            http_client: Client to use. Created if None.
            retries: Attempts per token request.
            timeout: Per-request timeout in seconds.
            stop_event: Aborts retry backoff on shutdown.
        """
        if not client_id:
            raise MALAuthError(
                "MAL_CLIENT_ID must be set. Register an app at https://myanimelist.net/apiconfig"
            )
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_url = redirect_url
        self.retries = retries
        self._stop = stop_event
        self._http_client = http_client or httpx.Client(timeout=timeout)

    def authorization_url(self, code_verifier: str, state: str) -> str:
        """Build the URL the user opens to grant access."""
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "code_challenge": code_verifier,  # MAL only supports "plain"
            "code_challenge_method": "plain",
            "state": state,
        }
        if self.redirect_url:
            params["redirect_uri"] = self.redirect_url
        return f"{MAL_AUTH_URL}?{urlencode(params)}"

    def _token_request(self, data: dict) -> dict:
        data = {"client_id": self.client_id, **data}
        if self.client_secret:
            data["client_secret"] = self.client_secret

        try:
            response = send_with_retry(
                self._http_client,
                "POST",
                MAL_TOKEN_URL,
                retries=self.retries,
                stop_event=self._stop,
                data=data,
            )
        except AuthError:
            raise
        except APIError as e:
            # invalid_grant and friends come back as 400
            if e.status_code == 400:
                raise AuthError(f"Token request rejected: {e.body}", status_code=400, body=e.body) from e
            raise

        payload = response.json()
        for key in ("access_token", "refresh_token", "expires_in"):
            if key not in payload:
                raise APIError(f"Token response missing '{key}'", status_code=response.status_code)
        return payload

    def exchange_code(self, code: str, code_verifier: str) -> dict:
        """Exchange an authorization code for a token pair.

        Returns:
            Dictionary with access_token, refresh_token, expires_in.

        Raises:
            AuthError: If MAL rejects the code.
            TransientApiError: If MAL cannot be reached.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": code_verifier,
        }
        if self.redirect_url:
            data["redirect_uri"] = self.redirect_url
        return self._token_request(data)

    def exchange_refresh_token(self, refresh_token: str) -> dict:
        """Exchange a refresh token for a new token pair.

        Raises:
            AuthError: If the refresh token was revoked or expired.
            TransientApiError: If MAL cannot be reached.
        """
        return self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})

    def close(self) -> None:
        self._http_client.close()


def interactive_auth(
    auth_client: MALAuthClient,
    token_manager,
    redirect: str | None = None,
    code_verifier: str | None = None,
) -> bool:
    """Run the one-time interactive authorization.

    Args:
        auth_client: MALAuthClient instance.
        token_manager: TokenManager that will own the resulting tokens.
        redirect: Redirect URL or code obtained elsewhere; prompted for if None.
        code_verifier: Verifier used when that code was requested.

    Returns:
        True if authentication was successful.
    """
    print("\n=== MyAnimeList Authentication ===\n")

    state = secrets.token_urlsafe(16)

    if redirect is None:
        code_verifier = new_code_verifier()
        print(f"1. Open this URL in a browser:\n\n   {auth_client.authorization_url(code_verifier, state)}\n")
        print("2. Approve access, then paste the URL you were redirected to.")
        redirect = input("\nRedirect URL: ")
        expected_state = state
    elif not code_verifier:
        print("A code obtained elsewhere needs the code verifier it was requested with.")
        return False
    else:
        expected_state = None

    try:
        code = parse_redirect(redirect, expected_state)
        token_manager.bootstrap(code, code_verifier)
    except (MALAuthError, APIError) as e:
        print(f"\nAuthentication failed: {e}")
        return False

    print("\n✓ Authentication successful!")
    return True
