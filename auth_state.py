"""
Current-user identity and authentication-state signal.

Services resolve the signed-in user through ``AuthState.require_user_id()``
before touching the store, so every operation fails closed when nobody is
signed in. Listeners subscribed here are notified on every sign-in and
sign-out; the sync orchestrator uses this signal to start and stop its
periodic timer.
"""

import inspect
import logging
from typing import Awaitable, Callable, List, Optional, Union

from exceptions import NotAuthenticatedError

logger = logging.getLogger(__name__)

AuthListener = Callable[[Optional[str]], Union[None, Awaitable[None]]]


class AuthState:
    """Holds the current user id and notifies listeners when it changes."""

    def __init__(self, user_id: Optional[str] = None):
        self._user_id = user_id
        self._listeners: List[AuthListener] = []

    @property
    def current_user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def is_authenticated(self) -> bool:
        return self._user_id is not None

    def require_user_id(self) -> str:
        """
        Return the signed-in user id.

        Raises:
            NotAuthenticatedError: If no user is signed in
        """
        if self._user_id is None:
            raise NotAuthenticatedError("No authenticated user")
        return self._user_id

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        """
        Register a listener called with the new user id (None on sign-out).

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def sign_in(self, user_id: str) -> None:
        if not user_id:
            raise NotAuthenticatedError("Cannot sign in without a user id")
        if user_id == self._user_id:
            return
        if self._user_id is not None:
            await self.sign_out()
        self._user_id = user_id
        logger.info(f"User {user_id} signed in")
        await self._notify(user_id)

    async def sign_out(self) -> None:
        if self._user_id is None:
            return
        logger.info(f"User {self._user_id} signed out")
        self._user_id = None
        await self._notify(None)

    async def _notify(self, user_id: Optional[str]) -> None:
        for listener in list(self._listeners):
            result = listener(user_id)
            if inspect.isawaitable(result):
                await result
