from __future__ import annotations

import logging

from batch_mail.config_store import ConfigStore
from batch_mail.dispatcher import BatchDispatcher
from batch_mail.models import View
from batch_mail.screens import HomeScreen, SettingsScreen

logger = logging.getLogger(__name__)


class AppController:
    """Owns the active view and the screen instances behind each view.

    Screens never switch views themselves; they return the view they want
    and the controller applies it through navigate().
    """

    def __init__(
        self,
        config_store: ConfigStore | None = None,
        dispatcher: BatchDispatcher | None = None,
    ):
        self.config_store = config_store or ConfigStore()
        self.dispatcher = dispatcher or BatchDispatcher()
        self.active_view = View.HOME
        self._screens: dict[View, HomeScreen | SettingsScreen] = {}

    @property
    def home(self) -> HomeScreen:
        return self.screen(View.HOME)  # type: ignore[return-value]

    @property
    def settings(self) -> SettingsScreen:
        return self.screen(View.SETTINGS)  # type: ignore[return-value]

    @property
    def active_screen(self) -> HomeScreen | SettingsScreen:
        return self.screen(self.active_view)

    def screen(self, view: View) -> HomeScreen | SettingsScreen:
        existing = self._screens.get(view)
        if existing is not None:
            return existing
        if view is View.HOME:
            created: HomeScreen | SettingsScreen = HomeScreen(self.config_store, self.dispatcher)
        else:
            created = SettingsScreen(self.config_store)
        self._screens[view] = created
        return created

    def navigate(self, view: View) -> HomeScreen | SettingsScreen:
        if view is not self.active_view:
            logger.info("切换视图: %s -> %s", self.active_view.value, view.value)
        if view is View.SETTINGS and self.active_view is not View.SETTINGS and view in self._screens:
            self.settings.reload()
        self.active_view = view
        return self.screen(view)

    def discard(self, view: View) -> None:
        self._screens.pop(view, None)
        if view is self.active_view:
            self.active_view = View.HOME
