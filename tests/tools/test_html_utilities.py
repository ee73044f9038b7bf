import unittest

from session_engine.tools.html_utilities import html_to_markdown, html_to_text


class HtmlToMarkdownTests(unittest.TestCase):
    def test_headings_emphasis_and_links(self) -> None:
        md = html_to_markdown("<h2>Intro</h2><p>Some <strong>bold</strong> and <em>soft</em> <a href='https://x.test'>text</a></p>")
        self.assertEqual("## Intro\n\nSome **bold** and _soft_ [text](https://x.test)", md)

    def test_lists_nest(self) -> None:
        md = html_to_markdown("<ul><li>one<ul><li>inner</li></ul></li><li>two</li></ul><ol><li>a</li><li>b</li></ol>")
        self.assertIn("- one\n  - inner\n- two", md)
        self.assertIn("1. a\n2. b", md)

    def test_code_blocks_keep_language(self) -> None:
        md = html_to_markdown('<pre><code class="language-python">print(1)\n</code></pre><p>use <code>x</code></p>')
        self.assertIn("```python\nprint(1)\n```", md)
        self.assertIn("use `x`", md)

    def test_scripts_are_dropped(self) -> None:
        self.assertEqual("Visible", html_to_markdown("<script>alert(1)</script><p>Visible</p>"))


class HtmlToTextTests(unittest.TestCase):
    def test_blocks_and_lists(self) -> None:
        text = html_to_text("<p>First</p><ul><li>a</li><li>b</li></ul>")
        self.assertIn("First", text)
        self.assertIn("- a", text)
        self.assertIn("- b", text)


if __name__ == "__main__":
    unittest.main()
