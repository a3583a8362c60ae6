"""
Configuration manager for Guess Quiz Bot settings and asset locations.
"""
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import BATCH_ALL, GameMode, QuizSettings


class ConfigManager:
    """Manages bot configuration settings and quiz parameters."""

    # Default asset and storage locations
    DEFAULT_AVATARS_DIRECTORY = "./pfps/"
    DEFAULT_ARTS_DIRECTORY = "./arts/"
    DEFAULT_CAPTIONS_PATH = "./captions.json"
    DEFAULT_STATS_DIRECTORY = "./stats/"

    # Validation limits
    MIN_TILE_SIZE = 64
    MAX_TILE_SIZE = 1024
    MIN_SEND_ATTEMPTS = 1
    MAX_SEND_ATTEMPTS = 10
    MAX_DELAY = 30.0
    MAX_COLD_START_ROUNDS = 100

    DELAY_SETTINGS = ('avatar_next_round_delay', 'art_next_round_delay', 'batch_start_delay')

    def __init__(self):
        """Initialize ConfigManager with default settings."""
        self.logger = logging.getLogger(__name__)
        self._settings = QuizSettings()
        self._paths = self._default_paths()

    def _default_paths(self) -> Dict[str, str]:
        return {
            'avatars_directory': self.DEFAULT_AVATARS_DIRECTORY,
            'arts_directory': self.DEFAULT_ARTS_DIRECTORY,
            'captions_path': self.DEFAULT_CAPTIONS_PATH,
            'stats_directory': self.DEFAULT_STATS_DIRECTORY,
        }

    def get_quiz_settings(self) -> QuizSettings:
        """
        Get a copy of the current quiz settings.

        Returns:
            QuizSettings object with current configuration
        """
        return replace(
            self._settings,
            avatar_round_options=list(self._settings.avatar_round_options),
            art_round_options=list(self._settings.art_round_options),
            batch_size_options=list(self._settings.batch_size_options)
        )

    def get_round_options(self, mode: GameMode) -> List[int]:
        if mode is GameMode.AVATAR:
            return list(self._settings.avatar_round_options)
        return list(self._settings.art_round_options)

    def get_next_round_delay(self, mode: GameMode) -> float:
        if mode is GameMode.AVATAR:
            return self._settings.avatar_next_round_delay
        return self._settings.art_next_round_delay

    def set_round_options(self, mode: GameMode, options: List[int]) -> Dict[str, Any]:
        """
        Set the round-count thresholds offered for a mode.

        Args:
            mode: Game mode the thresholds apply to
            options: Positive round counts

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        if not isinstance(options, list) or not options:
            error_msg = f"Round options must be a non-empty list, got {options!r}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': "❌ Invalid input: Expected a list of round counts"
            }

        if any(isinstance(n, bool) or not isinstance(n, int) or n < 1 for n in options):
            error_msg = f"Round options must be positive integers, got {options!r}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': "❌ Round counts must be whole numbers of at least 1"
            }

        cleaned = sorted(set(options))
        if mode is GameMode.AVATAR:
            self._settings.avatar_round_options = cleaned
        else:
            self._settings.art_round_options = cleaned
        self.logger.info(f"Round options for {mode.value} mode set to {cleaned}")
        return {
            'success': True,
            'message': f"Round options for {mode.value} mode set to {cleaned}",
            'user_message': f"✅ {mode.value.title()} mode offers {', '.join(map(str, cleaned))} rounds"
        }

    def set_tile_size(self, tile_size: int) -> Dict[str, Any]:
        """
        Set the collage tile resolution in pixels.

        Args:
            tile_size: Width and height of one collage tile

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        if isinstance(tile_size, bool) or not isinstance(tile_size, int):
            error_msg = f"Tile size must be an integer, got {type(tile_size).__name__}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Invalid input: Expected a number, got {type(tile_size).__name__}"
            }

        if not self.MIN_TILE_SIZE <= tile_size <= self.MAX_TILE_SIZE:
            error_msg = f"Tile size must be between {self.MIN_TILE_SIZE} and {self.MAX_TILE_SIZE}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Tile size must be {self.MIN_TILE_SIZE}-{self.MAX_TILE_SIZE} pixels"
            }

        self._settings.tile_size = tile_size
        self.logger.info(f"Tile size set to {tile_size}")
        return {
            'success': True,
            'message': f"Tile size set to {tile_size}",
            'user_message': f"✅ Collage tiles are now {tile_size}px"
        }

    def set_max_send_attempts(self, attempts: int) -> Dict[str, Any]:
        """
        Set how many times a rate-limited send is attempted.

        Args:
            attempts: Total attempts including the first one

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        if isinstance(attempts, bool) or not isinstance(attempts, int):
            error_msg = f"Send attempts must be an integer, got {type(attempts).__name__}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Invalid input: Expected a number, got {type(attempts).__name__}"
            }

        if not self.MIN_SEND_ATTEMPTS <= attempts <= self.MAX_SEND_ATTEMPTS:
            error_msg = f"Send attempts must be between {self.MIN_SEND_ATTEMPTS} and {self.MAX_SEND_ATTEMPTS}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Send attempts must be {self.MIN_SEND_ATTEMPTS}-{self.MAX_SEND_ATTEMPTS}"
            }

        self._settings.max_send_attempts = attempts
        self.logger.info(f"Max send attempts set to {attempts}")
        return {
            'success': True,
            'message': f"Max send attempts set to {attempts}",
            'user_message': f"✅ Sends will be attempted up to {attempts} times"
        }

    def set_delay(self, name: str, seconds: float) -> Dict[str, Any]:
        """
        Set one of the pacing delays.

        Args:
            name: One of ``DELAY_SETTINGS``
            seconds: Delay in seconds

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        if name not in self.DELAY_SETTINGS:
            error_msg = f"Unknown delay setting: {name}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Unknown delay: {name}"
            }

        if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
            error_msg = f"Delay must be a number, got {type(seconds).__name__}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Invalid input: Expected a number, got {type(seconds).__name__}"
            }

        if not 0 <= seconds <= self.MAX_DELAY:
            error_msg = f"Delay must be between 0 and {self.MAX_DELAY} seconds"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Delay must be 0-{self.MAX_DELAY:g} seconds"
            }

        setattr(self._settings, name, float(seconds))
        self.logger.info(f"{name} set to {seconds}s")
        return {
            'success': True,
            'message': f"{name} set to {seconds}s",
            'user_message': f"✅ {name.replace('_', ' ')} set to {seconds}s"
        }

    def set_cold_start(self, rounds: int, use_show_counts: bool = True) -> Dict[str, Any]:
        """
        Configure the least-shown-first policy for the opening rounds.

        Args:
            rounds: Number of opening rounds that prefer rarely shown entities
            use_show_counts: Whether historical counts are consulted at all

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        if isinstance(rounds, bool) or not isinstance(rounds, int) or not 0 <= rounds <= self.MAX_COLD_START_ROUNDS:
            error_msg = f"Cold start rounds must be an integer between 0 and {self.MAX_COLD_START_ROUNDS}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Cold start rounds must be 0-{self.MAX_COLD_START_ROUNDS}"
            }

        if not isinstance(use_show_counts, bool):
            error_msg = f"use_show_counts must be a boolean, got {type(use_show_counts).__name__}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': "❌ Invalid input: Expected true/false"
            }

        self._settings.cold_start_rounds = rounds
        self._settings.use_show_counts = use_show_counts
        self.logger.info(f"Cold start set to {rounds} rounds (show counts: {use_show_counts})")
        return {
            'success': True,
            'message': f"Cold start set to {rounds} rounds",
            'user_message': f"✅ First {rounds} rounds favour rarely shown entities"
        }

    def set_path(self, name: str, value: str) -> Dict[str, Any]:
        """
        Set an asset or storage path with validation.

        Args:
            name: ``avatars_directory``, ``arts_directory``, ``captions_path``
                or ``stats_directory``
            value: Filesystem path

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        if name not in self._paths:
            error_msg = f"Unknown path setting: {name}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Unknown path setting: {name}"
            }

        if not isinstance(value, str) or not value.strip():
            error_msg = f"{name} must be a non-empty string"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': "❌ Path cannot be empty"
            }

        try:
            normalized_path = str(Path(value).resolve())
        except (OSError, ValueError) as e:
            error_msg = f"Invalid path format: {e}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Invalid path format: {value}"
            }

        system_dirs = ['/bin', '/usr', '/etc', '/sys', '/proc', 'C:\\Windows', 'C:\\Program Files']
        if any(normalized_path.startswith(sys_dir) for sys_dir in system_dirs):
            error_msg = f"Cannot use system directory: {normalized_path}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Cannot use system directory: {value}"
            }

        self._paths[name] = normalized_path
        self.logger.info(f"{name} set to {normalized_path}")
        return {
            'success': True,
            'message': f"{name} set to {normalized_path}",
            'user_message': f"✅ {name.replace('_', ' ')} set to {normalized_path}"
        }

    def get_path(self, name: str) -> str:
        return self._paths[name]

    def get_stats_path(self, mode: GameMode) -> str:
        return str(Path(self._paths['stats_directory']) / f"{mode.value}_stats.json")

    def apply_config(self, config: Dict[str, Any]) -> List[str]:
        """
        Apply the ``quiz``, ``assets`` and ``stats`` sections of config.json.

        Invalid values are logged and skipped so the defaults stay in effect.

        Returns:
            Error messages for every rejected value
        """
        errors: List[str] = []

        def check(result: Dict[str, Any]) -> None:
            if not result['success']:
                errors.append(result['error'])

        quiz_config = config.get('quiz', {})
        if 'avatar_round_options' in quiz_config:
            check(self.set_round_options(GameMode.AVATAR, quiz_config['avatar_round_options']))
        if 'art_round_options' in quiz_config:
            check(self.set_round_options(GameMode.ART, quiz_config['art_round_options']))
        if 'tile_size' in quiz_config:
            check(self.set_tile_size(quiz_config['tile_size']))
        if 'max_send_attempts' in quiz_config:
            check(self.set_max_send_attempts(quiz_config['max_send_attempts']))
        if 'cold_start_rounds' in quiz_config or 'use_show_counts' in quiz_config:
            check(self.set_cold_start(
                quiz_config.get('cold_start_rounds', self._settings.cold_start_rounds),
                quiz_config.get('use_show_counts', self._settings.use_show_counts)
            ))
        for name in self.DELAY_SETTINGS:
            if name in quiz_config:
                check(self.set_delay(name, quiz_config[name]))

        asset_config = config.get('assets', {})
        for name in ('avatars_directory', 'arts_directory', 'captions_path'):
            if name in asset_config:
                check(self.set_path(name, asset_config[name]))

        stats_config = config.get('stats', {})
        if 'directory' in stats_config:
            check(self.set_path('stats_directory', stats_config['directory']))

        if errors:
            self.logger.warning(f"Ignored {len(errors)} invalid configuration values")
        return errors

    def reset_to_defaults(self) -> None:
        """Reset all settings to their default values."""
        self._settings = QuizSettings()
        self._paths = self._default_paths()
        self.logger.info("All settings reset to default values")

    def validate_settings(self) -> Dict[str, Any]:
        """
        Validate current settings and return validation results.

        Returns:
            Dictionary with validation results and any issues found
        """
        validation_result = {
            "valid": True,
            "issues": []
        }
        settings = self._settings

        for mode in GameMode:
            options = self.get_round_options(mode)
            if not options or any(not isinstance(n, int) or n < 1 for n in options):
                validation_result["valid"] = False
                validation_result["issues"].append(f"Invalid round options for {mode.value}: {options}")

        for size in settings.batch_size_options:
            if size != BATCH_ALL and (not isinstance(size, int) or not 1 <= size <= 3):
                validation_result["valid"] = False
                validation_result["issues"].append(f"Invalid batch size option: {size}")

        if not self.MIN_TILE_SIZE <= settings.tile_size <= self.MAX_TILE_SIZE:
            validation_result["valid"] = False
            validation_result["issues"].append(f"Invalid tile size: {settings.tile_size}")

        if not self.MIN_SEND_ATTEMPTS <= settings.max_send_attempts <= self.MAX_SEND_ATTEMPTS:
            validation_result["valid"] = False
            validation_result["issues"].append(f"Invalid send attempts: {settings.max_send_attempts}")

        for name in self.DELAY_SETTINGS:
            value = getattr(settings, name)
            if not 0 <= value <= self.MAX_DELAY:
                validation_result["valid"] = False
                validation_result["issues"].append(f"Invalid {name}: {value}")

        return validation_result

    def get_settings_summary(self) -> str:
        """
        Get a formatted summary of current settings.

        Returns:
            Human-readable string describing current settings
        """
        settings = self._settings
        return (
            f"Quiz Settings:\n"
            f"• Avatar rounds: {', '.join(map(str, settings.avatar_round_options))} or all\n"
            f"• Art rounds: {', '.join(map(str, settings.art_round_options))} or all\n"
            f"• Cold start: {settings.cold_start_rounds} rounds"
            f"{'' if settings.use_show_counts else ' (disabled)'}\n"
            f"• Collage tile: {settings.tile_size}px\n"
            f"• Send attempts: {settings.max_send_attempts}\n"
            f"• Avatars: {self._paths['avatars_directory']}\n"
            f"• Arts: {self._paths['arts_directory']}"
        )

    def health_check(self) -> Dict[str, Any]:
        """
        Check settings and asset locations.

        Returns:
            Dictionary with health status, warnings and errors
        """
        health = {
            'healthy': True,
            'warnings': [],
            'errors': []
        }

        validation_result = self.validate_settings()
        if not validation_result['valid']:
            health['healthy'] = False
            health['errors'].extend(validation_result['issues'])

        for name in ('avatars_directory', 'arts_directory'):
            if not Path(self._paths[name]).is_dir():
                health['warnings'].append(f"⚠️ {name.replace('_', ' ')} does not exist: {self._paths[name]}")

        if not Path(self._paths['captions_path']).is_file():
            health['warnings'].append(f"⚠️ Captions file not found: {self._paths['captions_path']}")

        return health

    def load_from_dict(self, config: Optional[Dict[str, Any]]) -> "ConfigManager":
        """Convenience wrapper: reset, apply ``config`` and return self."""
        self.reset_to_defaults()
        if config:
            self.apply_config(config)
        return self
