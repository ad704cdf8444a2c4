import codecs

from loguru import logger

DEFAULT_ENCODINGS = ("utf-8-sig", "utf-16")


class Decoder:
    """
    Incremental bytes -> text decoder for a growing source.

    The first non-empty read tries the candidate encodings in order and locks
    the first one that decodes that read without error; bytes arriving later
    never change the lock, they degrade to U+FFFD. Incomplete multi-byte
    sequences at the end of a read stay inside the codec state and are
    completed by the next read, so splitting valid input anywhere yields the
    same text.

    Two offsets are tracked for the current epoch:
        byte_offset: raw bytes consumed (where to reseek the source).
        char_offset: characters emitted (for incremental vs. full rescans).
    """

    def __init__(self, encodings=DEFAULT_ENCODINGS, normalize_newlines=False):
        if not encodings:
            raise ValueError("At least one candidate encoding is required")
        self.encodings = tuple(encodings)
        self.normalize_newlines = normalize_newlines
        self.reset()

    @property
    def encoding(self):
        return self._encoding

    def reset(self):
        """Starts a new decode epoch (source truncated or reloaded)."""
        self._encoding = None
        self._decoder = None
        self._pending_cr = False
        self.byte_offset = 0
        self.char_offset = 0

    def decode(self, raw):
        if not raw:
            return ""

        if self._decoder is None:
            text = self._detect(raw)
        else:
            text = self._decoder.decode(raw)

        self.byte_offset += len(raw)
        if self.normalize_newlines:
            text = self._normalize(text)
        self.char_offset += len(text)
        return text

    def flush(self):
        """Returns whatever the codec still buffers, with replacement markers."""
        if self._decoder is None:
            return ""
        text = self._decoder.decode(b"", final=True)
        if self.normalize_newlines:
            if self._pending_cr:
                text = "\r" + text
                self._pending_cr = False
            text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\0", "")
        self.char_offset += len(text)
        return text

    def _detect(self, raw):
        for encoding in self.encodings:
            decoder = codecs.getincrementaldecoder(encoding)("strict")
            try:
                text = decoder.decode(raw)
            except UnicodeDecodeError:
                continue
            # Locked: from now on bad bytes degrade to U+FFFD instead of raising
            decoder.errors = "replace"
            self._lock(encoding, decoder)
            return text

        encoding = self.encodings[0]
        logger.warning(f"No candidate encoding of {self.encodings} decodes cleanly, falling back to {encoding} with replacement")
        decoder = codecs.getincrementaldecoder(encoding)("replace")
        self._lock(encoding, decoder)
        return decoder.decode(raw)

    def _lock(self, encoding, decoder):
        logger.debug(f"Locked source encoding to {encoding}")
        self._encoding = encoding
        self._decoder = decoder

    def _normalize(self, text):
        if self._pending_cr:
            text = "\r" + text
            self._pending_cr = False
        if text.endswith("\r"):
            # Might be the first half of a \r\n split across reads
            text = text[:-1]
            self._pending_cr = True
        return text.replace("\r\n", "\n").replace("\r", "\n").replace("\0", "")
