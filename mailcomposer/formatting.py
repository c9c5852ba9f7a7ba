import re


_WHITESPACE_RUN = re.compile(r"\s{2,}")
_BR_TAG = re.compile(r"<br\s*/?>", re.IGNORECASE)
_P_CLOSE = re.compile(r"</p>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]*>")
_EXCESS_NEWLINES = re.compile(r"\n\s*\n\s*\n")


def to_html(raw: str) -> str:
    """Turn operator-typed content into the HTML body, keeping line breaks."""
    html = raw.replace("\n", "<br>")
    html = html.replace("\r", "")
    html = _WHITESPACE_RUN.sub(" ", html)
    return html.strip()


def to_plain_text(html: str) -> str:
    """Derive the text/plain alternative from an HTML body."""
    text = _BR_TAG.sub("\n", html)
    text = _P_CLOSE.sub("\n\n", text)
    text = _ANY_TAG.sub("", text)
    text = text.replace("&nbsp;", " ")
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()


def personalize(template: str, name: str, sender_name: str | None = None) -> str:
    """Fill {{name}}, {{first_name}} and {{sender_name}}; other placeholders are left alone."""
    name = (name or "").strip()
    first_name = name.split(" ")[0] if name else ""
    result = template.replace("{{name}}", name).replace("{{first_name}}", first_name)
    if sender_name is not None:
        result = result.replace("{{sender_name}}", sender_name)
    return result
