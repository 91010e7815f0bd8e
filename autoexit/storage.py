import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Protocol

logger = logging.getLogger("Storage")


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...
    def set(self, key: str, value: str) -> None: ...
    def remove(self, key: str) -> None: ...


class MemoryStore:
    """Stockage clé/valeur éphémère (tests, mode sans disque)."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileStore:
    """
    Stockage clé/valeur persistant dans un unique document JSON.
    Écriture atomique (fichier temporaire + os.replace), sans garantie transactionnelle.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("document racine non-objet")
            return {str(k): str(v) for k, v in data.items()}
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️ Stockage illisible ({self.path}), repart de zéro: {e}")
            return {}

    def _flush(self) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump(self._data, f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.warning(f"⚠️ Sauvegarde du stockage échouée: {e}")

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()

    def keys(self) -> list[str]:
        return list(self._data)
