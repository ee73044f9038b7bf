import re
from html import unescape

from bs4 import BeautifulSoup, NavigableString, Tag

_DROPPED_TAGS = ["script", "style", "head", "noscript", "iframe", "object", "embed", "meta", "link"]
_BLOCK_TAGS = ["p", "div", "tr", "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "section", "article"]


def html_to_text(html: str) -> str:
    """Convert an HTML string to readable plain text.

    Handles block elements, lists, table cells, and whitespace normalization.
    """
    soup = BeautifulSoup(html, "lxml")

    for tag in soup.find_all(_DROPPED_TAGS):
        tag.decompose()

    for br in soup.find_all("br"):
        br.replace_with("\n")

    for tag in soup.find_all(_BLOCK_TAGS):
        tag.insert(0, NavigableString("\n"))
        tag.append(NavigableString("\n"))

    for li in soup.find_all("li"):
        li.insert(0, NavigableString("\n- "))

    for td in soup.find_all(["td", "th"]):
        td.append(NavigableString("\t"))

    body = soup.find("body")
    text = (body or soup).get_text()
    text = unescape(text)

    text = re.sub(r"\t+", "  ", text)
    text = re.sub(r" {3,}", "  ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def html_to_markdown(html: str) -> str:
    """Convert an HTML string to Markdown.

    Covers headings, emphasis, links, images, lists, code, blockquotes and
    horizontal rules. Tables degrade to one row per line with ``|`` separators.
    """
    soup = BeautifulSoup(html, "lxml")
    for tag in soup.find_all(_DROPPED_TAGS):
        tag.decompose()
    root = soup.find("body") or soup
    markdown = _render_children(root)
    markdown = re.sub(r"[ \t]+\n", "\n", markdown)
    markdown = re.sub(r"\n{3,}", "\n\n", markdown)
    return markdown.strip()


def _render_children(node: Tag, *, depth: int = 0) -> str:
    return "".join(_render(child, depth=depth) for child in node.children)


def _render(node, *, depth: int) -> str:
    if isinstance(node, NavigableString):
        if node.__class__ is not NavigableString:
            # Comments, CDATA, doctype.
            return ""
        return re.sub(r"\s+", " ", str(node))
    if not isinstance(node, Tag):
        return ""

    name = node.name
    if name in ("h1", "h2", "h3", "h4", "h5", "h6"):
        level = int(name[1])
        return f"\n\n{'#' * level} {_render_children(node, depth=depth).strip()}\n\n"
    if name == "p":
        return f"\n\n{_render_children(node, depth=depth).strip()}\n\n"
    if name == "br":
        return "  \n"
    if name == "hr":
        return "\n\n---\n\n"
    if name in ("strong", "b"):
        inner = _render_children(node, depth=depth).strip()
        return f"**{inner}**" if inner else ""
    if name in ("em", "i"):
        inner = _render_children(node, depth=depth).strip()
        return f"_{inner}_" if inner else ""
    if name == "code":
        if node.parent is not None and node.parent.name == "pre":
            return node.get_text()
        return f"`{node.get_text()}`"
    if name == "pre":
        language = ""
        code = node.find("code")
        if code is not None:
            for cls in code.get("class", []):
                if cls.startswith("language-"):
                    language = cls[len("language-"):]
        return f"\n\n```{language}\n{node.get_text().strip(chr(10))}\n```\n\n"
    if name == "a":
        text = _render_children(node, depth=depth).strip()
        href = node.get("href")
        if not href:
            return text
        title = node.get("title")
        target = f'{href} "{title}"' if title else href
        return f"[{text or href}]({target})"
    if name == "img":
        src = node.get("src")
        if not src:
            return ""
        return f"![{node.get('alt', '')}]({src})"
    if name in ("ul", "ol"):
        return "\n\n" + _render_list(node, ordered=name == "ol", depth=depth) + "\n\n"
    if name == "blockquote":
        inner = _render_children(node, depth=depth).strip()
        quoted = "\n".join(f"> {line}" if line else ">" for line in inner.splitlines())
        return f"\n\n{quoted}\n\n"
    if name == "tr":
        cells = [_render_children(cell, depth=depth).strip() for cell in node.find_all(["td", "th"], recursive=False)]
        return "\n| " + " | ".join(cells) + " |"
    if name in ("table", "thead", "tbody", "tfoot"):
        return "\n" + _render_children(node, depth=depth) + "\n"
    if name in ("div", "section", "article", "header", "footer", "main", "nav", "aside"):
        return f"\n\n{_render_children(node, depth=depth)}\n\n"
    return _render_children(node, depth=depth)


def _render_list(node: Tag, *, ordered: bool, depth: int) -> str:
    lines: list[str] = []
    indent = "  " * depth
    index = 1
    for item in node.find_all("li", recursive=False):
        marker = f"{index}." if ordered else "-"
        body_parts: list[str] = []
        nested: list[str] = []
        for child in item.children:
            if isinstance(child, Tag) and child.name in ("ul", "ol"):
                nested.append(_render_list(child, ordered=child.name == "ol", depth=depth + 1))
            else:
                body_parts.append(_render(child, depth=depth + 1))
        body = re.sub(r"\s*\n\s*", " ", "".join(body_parts)).strip()
        lines.append(f"{indent}{marker} {body}")
        lines.extend(nested)
        index += 1
    return "\n".join(lines)
