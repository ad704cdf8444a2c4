import json

from PySide6.QtCore import QObject, QSettings, Signal
from loguru import logger

from log_monitor.core.decoder import DEFAULT_ENCODINGS
from log_monitor.core.rules import Rule, RuleSet, default_rules


class ConfigManager(QObject):
    """
    Manages application settings using QSettings.

    Pass a path to keep the settings in an INI file (tests, portable setups);
    without one the platform default location is used. There is no global
    instance: the entry point builds one and hands it to the controllers.
    """

    themeChanged = Signal(str)   # "Dark" or "Light"
    rulesChanged = Signal(object)  # list of Rule
    pollIntervalChanged = Signal(int)

    def __init__(self, path=None, parent=None):
        super().__init__(parent)
        if path:
            self.settings = QSettings(path, QSettings.Format.IniFormat)
        else:
            # Organization and App names are set in main.py
            self.settings = QSettings()

    def get(self, key, default=None):
        return self.settings.value(key, default)

    def set(self, key, value):
        self.settings.setValue(key, value)

    def sync(self):
        self.settings.sync()

    # --- Appearance ---
    @property
    def theme(self):
        return self.settings.value("appearance/theme", "Dark")

    @theme.setter
    def theme(self, value):
        if self.theme != value:
            self.settings.setValue("appearance/theme", value)
            self.themeChanged.emit(value)

    @property
    def is_dark_mode(self):
        return self.theme == "Dark"

    # --- General ---
    @property
    def poll_interval_ms(self):
        return int(self.settings.value("general/poll_interval_ms", 500))

    @poll_interval_ms.setter
    def poll_interval_ms(self, value):
        value = max(int(value), 10)
        if self.poll_interval_ms != value:
            self.settings.setValue("general/poll_interval_ms", value)
            self.pollIntervalChanged.emit(value)

    @property
    def encodings(self):
        raw = self.settings.value("general/encodings", ",".join(DEFAULT_ENCODINGS))
        # QSettings hands a comma separated INI value back as a list
        if isinstance(raw, (list, tuple)):
            names = raw
        else:
            names = str(raw).split(",")
        names = tuple(n.strip() for n in names if n and n.strip())
        return names or DEFAULT_ENCODINGS

    @encodings.setter
    def encodings(self, names):
        self.settings.setValue("general/encodings", ",".join(names))

    # --- Remote ---
    @property
    def namespace(self):
        return self.settings.value("remote/namespace", "default")

    @namespace.setter
    def namespace(self, value):
        self.settings.setValue("remote/namespace", value)

    @property
    def since_seconds(self):
        return int(self.settings.value("remote/since_seconds", 3600))

    @since_seconds.setter
    def since_seconds(self, value):
        self.settings.setValue("remote/since_seconds", int(value))

    # --- Rules ---
    @property
    def rules(self):
        raw = self.settings.value("rules/items")
        if not raw:
            return default_rules()
        if isinstance(raw, (list, tuple)):
            raw = ",".join(raw)
        try:
            return [Rule.from_dict(item) for item in json.loads(raw)]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Stored rules are unreadable, using defaults: {e}")
            return default_rules()

    @rules.setter
    def rules(self, rules):
        rules = list(rules)
        self.settings.setValue("rules/items", json.dumps([r.to_dict() for r in rules]))
        self.rulesChanged.emit(rules)

    def ruleset(self):
        return RuleSet(self.rules)
