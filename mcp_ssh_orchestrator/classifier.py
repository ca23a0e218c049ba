"""Resolve free text into a directive, an explicit command or an intent."""
import re
from typing import Optional, Sequence, Tuple

from .datastructures import Classification, ClassificationKind
from .logging_manager import get_logger
from .suggestions import SuggestionEngine


DIRECTIVE_PREFIX = '/'

DIRECTIVES = frozenset({
    'start', 'help', 'servers', 'connect', 'disconnect', 'addserver',
    'removeserver', 'status', 'cancel', 'history', 'stop',
})

# Canned inputs offered by the front end, accepted verbatim
QUICK_COMMANDS = {
    'List files': 'ls -la',
    'Disk space': 'df -h',
    'System info': 'uname -a && uptime',
    'Running processes': 'ps aux | head -20',
    'Network status': 'netstat -tuln | head -20',
    'Memory usage': 'free -h',
    'Help': '/help',
    'Disconnect': '/disconnect',
}

# Commands that are safe to accept when they open the message
SAFE_COMMAND_NAMES = (
    'ls', 'pwd', 'whoami', 'df', 'ps', 'top', 'free', 'uptime', 'date', 'uname', 'id', 'hostname',
)

# Deterministic fallback when no suggestion engine answers; first match wins
DEFAULT_KEYWORD_COMMANDS: Tuple[Tuple[str, str], ...] = (
    (r'\bfiles?\b|\bdirectory contents\b', 'ls -la'),
    (r'\bcurrent directory\b|\bwhere am i\b', 'pwd'),
    (r'\bwho am i\b', 'whoami'),
    (r'\bdisk (space|usage)\b', 'df -h'),
    (r'\bmemory( usage)?\b|\bram\b', 'free -h'),
    (r'\b(running )?process(es)?\b', 'ps aux'),
    (r'\bsystem info(rmation)?\b', 'uname -a'),
    (r'\bnetwork connections\b|\b(open|listening) ports\b', 'netstat -tuln'),
    (r'\bcheck internet\b', 'ping -c 4 google.com'),
    (r'\bcpu( usage)?\b', 'top -b -n 1'),
    (r'\b(show|what).*\b(date|time)\b', 'date'),
)

# Single quotes must not touch a word character so apostrophes are not quotes
_QUOTED = re.compile(r'"([^"]+)"|(?<!\w)\'([^\']+)\'(?!\w)|`([^`]+)`')
_IMPERATIVE = re.compile(
    r'^(?:please\s+)?(?:can\s+you\s+)?(?:run|execute|exec)\s+(.+?)\s*$',
    re.IGNORECASE | re.DOTALL,
)
_SAFE_COMMAND = re.compile(
    r'^(?:' + '|'.join(SAFE_COMMAND_NAMES) + r')(?:\s|$)', re.IGNORECASE,
)


class CommandClassifier:
    """Classifies inbound text.

    Resolution order: directive, quoted segment, imperative phrase, bare safe
    command, then intent. Intents go to the suggestion engine first and to the
    keyword table when the engine is missing or has no answer; anything left is
    UNKNOWN so that nothing is run unless the requester said so.
    """

    def __init__(self, suggestion_engine: Optional[SuggestionEngine] = None,
                 keyword_commands: Sequence[Tuple[str, str]] = DEFAULT_KEYWORD_COMMANDS):
        self._engine = suggestion_engine
        self._keyword_commands = [
            (re.compile(pattern, re.IGNORECASE), command) for pattern, command in keyword_commands
        ]
        self.logger = get_logger('classifier')

    def classify(self, text: str) -> Classification:
        trimmed = text.strip()

        quick = QUICK_COMMANDS.get(trimmed)
        if quick is not None:
            trimmed = quick

        directive = self._match_directive(trimmed)
        if directive is not None:
            return directive

        command = self.extract_command(trimmed)
        if command:
            return Classification(ClassificationKind.EXPLICIT, trimmed, command=command)

        return self.resolve_intent(trimmed)

    @staticmethod
    def _match_directive(text: str) -> Optional[Classification]:
        if not text.startswith(DIRECTIVE_PREFIX):
            return None
        head, _, rest = text[len(DIRECTIVE_PREFIX):].partition(' ')
        name = head.lower()
        if name not in DIRECTIVES:
            return None
        return Classification(ClassificationKind.SYSTEM, text, directive=name, arguments=rest.strip())

    @staticmethod
    def extract_command(text: str) -> Optional[str]:
        """Return the command the text spells out explicitly, if any."""
        quoted = _QUOTED.search(text)
        if quoted:
            return next(group for group in quoted.groups() if group is not None)

        imperative = _IMPERATIVE.match(text)
        if imperative:
            return imperative.group(1)

        if _SAFE_COMMAND.match(text):
            return text
        return None

    def resolve_intent(self, text: str) -> Classification:
        logger = self.logger.getChild('intent')

        if self._engine is not None and self._engine.is_available():
            suggestion = self._engine.suggest(text)
            if suggestion is not None:
                logger.info(f"[SUGGEST] {text[:80]!r} -> {suggestion.commands[0]!r} "
                            f"(confidence={suggestion.confidence:.2f})")
                return Classification(ClassificationKind.INTENT, text,
                                      command=suggestion.commands[0], suggestion=suggestion)
            logger.debug("Suggestion engine returned nothing, using keyword table")

        for pattern, command in self._keyword_commands:
            if pattern.search(text):
                logger.debug(f"[KEYWORD] {text[:80]!r} -> {command!r}")
                return Classification(ClassificationKind.INTENT, text, command=command)

        return Classification(ClassificationKind.UNKNOWN, text)
