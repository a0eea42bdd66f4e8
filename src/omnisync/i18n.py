# In omnisync/i18n.py - gettext-backed translator shared by every module

import gettext
from pathlib import Path

LOCALE_DIR = Path(__file__).parent / "locale"

# Display languages. English is the source language and needs no catalog; a new
# entry ships with its locale/<code>/LC_MESSAGES/omnisync.mo.
AVAILABLE_LANGUAGES = {
    "en": {"name": "English", "native": "English"},
}

SUPPORTED_LANGUAGES = {code: data["native"] for code, data in AVAILABLE_LANGUAGES.items()}


class Translator:
    """
    A callable class that holds the global translation function.
    This structure avoids namespace collisions with `_` used as a throwaway name.
    """

    def __init__(self):
        self._translator = lambda s: s
        self.current_lang = "en"
        self.set_language()

    def set_language(self, lang_code=None):
        try:
            if lang_code is None:
                import locale

                lang_env = locale.getlocale()[0] or "en_US"
                lang_code = lang_env.split(".")[0]

            normalized_code = lang_code.replace("-", "_")
            langs_to_try = [normalized_code]
            if "_" in normalized_code:
                langs_to_try.append(normalized_code.split("_")[0])
            langs_to_try.append("en")

            translation = gettext.translation(
                "omnisync", localedir=str(LOCALE_DIR), languages=langs_to_try, fallback=True
            )
            self._translator = translation.gettext
            self.current_lang = translation.info().get("language", normalized_code)
        except Exception:
            self.current_lang = "en"
            self._translator = lambda s: s

    def __call__(self, text):
        return self._translator(text)

    def get_native_name(self, code=None):
        """Get the native name of a language."""
        if code is None:
            code = self.current_lang
        return AVAILABLE_LANGUAGES.get(code, {}).get("native", code)


# The global instance every module imports
_ = Translator()
