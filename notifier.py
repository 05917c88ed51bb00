import asyncio
import logging
from typing import Iterable, List, Protocol


class AvatarLibrary(Protocol):
    def reload_avatars(self) -> None:
        ...


class ModLoader(Protocol):
    def rescan_mods(self) -> None:
        ...


class Notifier:
    """Tells downstream collaborators that a pass changed their library.

    Delivery is deferred to the next loop iteration so collaborators never run
    inside the step that finished the pass.
    """

    def __init__(
        self,
        avatar_libraries: Iterable[AvatarLibrary] = (),
        mod_loaders: Iterable[ModLoader] = (),
    ) -> None:
        self.avatar_libraries: List[AvatarLibrary] = list(avatar_libraries)
        self.mod_loaders: List[ModLoader] = list(mod_loaders)

    def add_avatar_library(self, library: AvatarLibrary) -> None:
        self.avatar_libraries.append(library)

    def add_mod_loader(self, loader: ModLoader) -> None:
        self.mod_loaders.append(loader)

    def notify(self, avatars_changed: bool, mods_changed: bool) -> None:
        if not avatars_changed and not mods_changed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deliver(avatars_changed, mods_changed)
            return
        loop.call_soon(self._deliver, avatars_changed, mods_changed)

    def _deliver(self, avatars_changed: bool, mods_changed: bool) -> None:
        if avatars_changed:
            logging.info("Avatar library changed, reloading %s view(s)", len(self.avatar_libraries))
            for library in list(self.avatar_libraries):
                try:
                    library.reload_avatars()
                except Exception:
                    logging.exception("Avatar library reload failed")
        if mods_changed:
            logging.info("Mod set changed, rescanning %s loader(s)", len(self.mod_loaders))
            for loader in list(self.mod_loaders):
                try:
                    loader.rescan_mods()
                except Exception:
                    logging.exception("Mod loader rescan failed")
