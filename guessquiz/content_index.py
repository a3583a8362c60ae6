"""
Content index for avatar and artwork folders plus the captions table.
"""
import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional

from .models import Entity, GameMode, MediaItem, MediaKind


AVATAR_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.webp'}
VIDEO_EXTENSIONS = {'.mp4'}

# "<username>#<index>.<ext>", e.g. "pixelfox#2.png"
ART_FILE_PATTERN = re.compile(r'^(.+?)#(\d+)\.(jpg|jpeg|png|webp|mp4)$', re.IGNORECASE)


class ContentIndex:
    """Builds entity -> media mappings from the asset folders."""

    def __init__(
        self,
        avatars_directory: str = "./pfps/",
        arts_directory: str = "./arts/",
        captions: Optional[Dict[str, str]] = None
    ):
        """
        Initialize ContentIndex with asset directories.

        Args:
            avatars_directory: Folder with one avatar image per channel
            arts_directory: Folder with ``name#index.ext`` artwork files
            captions: Optional ``filename -> display label`` table
        """
        self.logger = logging.getLogger(__name__)
        self.avatars_directory = Path(avatars_directory)
        self.arts_directory = Path(arts_directory)
        self.load_errors: List[str] = []
        self._labels: Dict[str, str] = {}
        self.set_captions(captions or {})

    def load_captions(self, captions_path: str) -> Dict[str, str]:
        """
        Load the captions table from a JSON file.

        A missing or malformed file leaves the table empty; labels then fall
        back to entity ids.

        Args:
            captions_path: Path to a JSON object of ``filename -> label``

        Returns:
            The loaded captions table
        """
        path = Path(captions_path)
        captions: Dict[str, str] = {}
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                self.logger.error(f"Captions file {path} must contain a JSON object")
                self.load_errors.append(f"{path.name}: expected a JSON object")
            else:
                captions = {str(k): str(v) for k, v in data.items()}
                self.logger.info(f"Loaded {len(captions)} captions from {path}")
        except FileNotFoundError:
            self.logger.error(f"Captions file not found: {path}")
            self.load_errors.append(f"Captions file not found: {path}")
        except json.JSONDecodeError as e:
            self.logger.error(f"Invalid JSON in {path}: {e}")
            self.load_errors.append(f"{path.name}: invalid JSON")
        except OSError as e:
            self.logger.error(f"Failed to read captions file {path}: {e}")
            self.load_errors.append(f"{path.name}: {e}")

        self.set_captions(captions)
        return captions

    def set_captions(self, captions: Dict[str, str]) -> None:
        # Captions are keyed by file name ("art_2NGAR.jpg"); entities by stem.
        self._labels = {Path(name).stem: label for name, label in captions.items()}

    def display_label(self, entity_id: str) -> str:
        return self._labels.get(entity_id) or entity_id

    def get_entity(self, entity_id: str) -> Entity:
        return Entity(id=entity_id, display_label=self.display_label(entity_id))

    def caption_count(self) -> int:
        return len(self._labels)

    def build_index(self, mode: GameMode) -> Dict[str, List[MediaItem]]:
        """
        Scan the folder for ``mode`` and group media by entity.

        The folder is re-read on every call; callers keep the returned
        snapshot for the lifetime of a session.

        Args:
            mode: Game mode whose asset folder should be scanned

        Returns:
            Mapping of entity id to media ordered by sequence index
        """
        if mode is GameMode.AVATAR:
            return self._build_avatar_index()
        return self._build_art_index()

    def _list_files(self, directory: Path) -> List[str]:
        try:
            if not directory.is_dir():
                self.logger.warning(f"Asset directory not found: {directory}")
                return []
            return sorted(entry.name for entry in os.scandir(directory) if entry.is_file())
        except PermissionError:
            self.logger.error(f"Permission denied: Cannot read directory {directory}")
            return []
        except OSError as e:
            self.logger.error(f"System error scanning {directory}: {e}")
            return []

    def _build_avatar_index(self) -> Dict[str, List[MediaItem]]:
        index: Dict[str, List[MediaItem]] = {}
        for name in self._list_files(self.avatars_directory):
            path = Path(name)
            if path.suffix.lower() not in AVATAR_EXTENSIONS:
                continue
            entity_id = path.stem
            index[entity_id] = [MediaItem(
                entity_id=entity_id,
                sequence_index=1,
                kind=MediaKind.IMAGE,
                path=str(self.avatars_directory / name)
            )]
        self.logger.debug(f"Indexed {len(index)} avatars from {self.avatars_directory}")
        return dict(sorted(index.items()))

    def _build_art_index(self) -> Dict[str, List[MediaItem]]:
        index: Dict[str, List[MediaItem]] = {}
        for name in self._list_files(self.arts_directory):
            match = ART_FILE_PATTERN.match(name)
            if not match:
                continue
            entity_id = match.group(1)
            extension = '.' + match.group(3).lower()
            kind = MediaKind.VIDEO if extension in VIDEO_EXTENSIONS else MediaKind.IMAGE
            index.setdefault(entity_id, []).append(MediaItem(
                entity_id=entity_id,
                sequence_index=int(match.group(2)),
                kind=kind,
                path=str(self.arts_directory / name)
            ))

        for items in index.values():
            items.sort(key=lambda item: item.sequence_index)

        self.logger.debug(f"Indexed {len(index)} artists from {self.arts_directory}")
        return dict(sorted(index.items()))
