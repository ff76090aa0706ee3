"""
מנוע תבניות למיילים — החלפה טקסטואלית של {{ name }}.

דקדוק סגור: טוקן הוא {{ שם }} כאשר השם תואם [A-Za-z_][A-Za-z0-9_]*
ורווחים בתוך הסוגריים מותרים. כל דבר אחר (למשל {{ a.b }} או { name })
הוא טקסט רגיל ונשאר כמו שהוא.

ערכים מוחלפים כפי שהם, ללא HTML escaping — כותבי התבניות והנתונים
שמוזרקים (שם לקוח, מספר מעקב) נחשבים מהימנים.
"""
import enum
import re
from typing import Any, Mapping

from app.core.exceptions import TemplateRenderError

_TOKEN_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class MissingPolicy(str, enum.Enum):
    """מה עושים עם טוקן שאין לו ערך"""
    RAISE = "raise"
    KEEP = "keep"
    BLANK = "blank"


def find_placeholders(template: str) -> set[str]:
    """שמות כל הטוקנים שמופיעים בתבנית"""
    return {match.group(1) for match in _TOKEN_RE.finditer(template or "")}


def render(
    template: str,
    variables: Mapping[str, Any],
    on_missing: MissingPolicy = MissingPolicy.RAISE,
) -> str:
    """
    רינדור תבנית.

    Args:
        template: טקסט עם טוקנים.
        variables: מיפוי שם → ערך (None נחשב כחסר).
        on_missing: RAISE (ברירת מחדל) זורק TemplateRenderError עם כל השמות
            החסרים; KEEP משאיר את הטוקן המקורי; BLANK מחליף במחרוזת ריקה.

    Raises:
        TemplateRenderError: כשחסרים ערכים ו-on_missing=RAISE.
    """
    if not template:
        return ""

    if on_missing == MissingPolicy.RAISE:
        missing = sorted(
            name for name in find_placeholders(template)
            if variables.get(name) is None
        )
        if missing:
            raise TemplateRenderError(missing)

    def _substitute(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value is None:
            return match.group(0) if on_missing == MissingPolicy.KEEP else ""
        return str(value)

    return _TOKEN_RE.sub(_substitute, template)
