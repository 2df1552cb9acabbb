import unittest

from content import ContentLoader, auto_link_urls, render_error, render_markdown, rewrite_image_refs
from discovery import FetchError


class DictSource:
    def __init__(self, texts):
        self.texts = texts

    def fetch_text(self, path):
        try:
            return self.texts[path]
        except KeyError:
            raise FetchError("HTTP error! status: 404") from None


class RewriteImageRefsTests(unittest.TestCase):
    def test_relative_image_resolves_against_file_directory(self) -> None:
        self.assertEqual(rewrite_image_refs("![x](img.png)", "/docs/guide.md"), "![x](/docs/img.png)")

    def test_root_file_is_left_unchanged(self) -> None:
        self.assertEqual(rewrite_image_refs("![x](img.png)", "/readme.md"), "![x](img.png)")

    def test_parent_and_nested_references(self) -> None:
        text = "![a](../shared/a.png) and ![b](./pics/b.png)"
        self.assertEqual(
            rewrite_image_refs(text, "/docs/api/ref.md"),
            "![a](/docs/shared/a.png) and ![b](/docs/api/pics/b.png)",
        )

    def test_absolute_references_are_skipped(self) -> None:
        text = (
            "![a](https://example.com/a.png) ![b](/static/b.png) "
            "![c](data:image/png;base64,AAAA) ![d](//cdn.test/d.png)"
        )
        self.assertEqual(rewrite_image_refs(text, "/docs/guide.md"), text)

    def test_title_is_preserved(self) -> None:
        self.assertEqual(
            rewrite_image_refs('![x](img.png "A title")', "/docs/guide.md"),
            '![x](/docs/img.png "A title")',
        )

    def test_plain_links_are_not_rewritten(self) -> None:
        text = "[link](other.md)"
        self.assertEqual(rewrite_image_refs(text, "/docs/guide.md"), text)


class RenderTests(unittest.TestCase):
    def test_render_markdown_tables_and_fenced_code(self) -> None:
        html = render_markdown("| a | b |\n|---|---|\n| 1 | 2 |\n\n```\ncode\n```\n")
        self.assertIn("<table>", html)
        self.assertIn("code", html)

    def test_external_links_open_in_new_tab(self) -> None:
        html = render_markdown("see https://example.com/page")
        self.assertIn('href="https://example.com/page" target="_blank"', html)

    def test_urls_in_code_and_html_are_not_linked(self) -> None:
        text = (
            "Use `curl https://api.test/x` here.\n\n"
            "```\nGET https://api.test/y\n```\n\n"
            '<img src="https://cdn.test/z.png">\n\n'
            "Visit https://example.com/plain\n"
        )
        linked = auto_link_urls(text)
        self.assertIn("`curl https://api.test/x`", linked)
        self.assertIn("```\nGET https://api.test/y\n```", linked)
        self.assertIn('<img src="https://cdn.test/z.png">', linked)
        self.assertIn("[https://example.com/plain](https://example.com/plain)", linked)

        html = render_markdown(text)
        self.assertIn("<code>curl https://api.test/x</code>", html)
        self.assertIn('src="https://cdn.test/z.png"', html)
        self.assertNotIn("[https://api.test", html)

    def test_error_block_escapes_name_and_reason(self) -> None:
        html = render_error("<b>.md", "status: 500 & more")
        self.assertIn("Error loading &lt;b&gt;.md", html)
        self.assertIn("status: 500 &amp; more", html)
        self.assertTrue(html.startswith('<div class="error-content">'))


class ContentLoaderTests(unittest.TestCase):
    def test_load_renders_with_rewritten_images(self) -> None:
        loader = ContentLoader(DictSource({"/docs/guide.md": "# Guide\n\n![x](img.png)\n"}))

        result = loader.load("/docs/guide.md")

        self.assertTrue(result.ok)
        self.assertFalse(result.stale)
        self.assertEqual(result.name, "guide.md")
        self.assertIn('<div class="markdown-content">', result.html)
        self.assertIn('src="/docs/img.png"', result.html)

    def test_fetch_failure_renders_inline_error(self) -> None:
        loader = ContentLoader(DictSource({}))

        with self.assertLogs("content", level="ERROR"):
            result = loader.load("/docs/missing.md", "missing.md")

        self.assertFalse(result.ok)
        self.assertIn("Error loading missing.md", result.html)
        self.assertIn("HTTP error! status: 404", result.html)

    def test_generations_increase_and_only_latest_is_current(self) -> None:
        loader = ContentLoader(DictSource({"/a.md": "a"}))
        first = loader.load("/a.md")
        second = loader.load("/a.md")
        self.assertEqual(second.generation, first.generation + 1)
        self.assertFalse(loader.is_current(first.generation))
        self.assertTrue(loader.is_current(second.generation))


if __name__ == "__main__":
    unittest.main()
