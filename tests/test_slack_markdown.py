import pytest

from coday_slack.markdown import markdown_to_slack, validate_slack_format


@pytest.mark.parametrize(
    ("source", "expected"),
    [
        (
            "This is **bold text** and this is **also bold**",
            "This is *bold text* and this is *also bold*",
        ),
        ("This is __bold__ too", "This is *bold* too"),
        ("This is *already slack bold*", "This is *already slack bold*"),
        (
            "Check out [this link](https://example.com) for more info",
            "Check out <https://example.com|this link> for more info",
        ),
        (
            "[Link 1](https://example1.com) and [Link 2](https://example2.com)",
            "<https://example1.com|Link 1> and <https://example2.com|Link 2>",
        ),
        ("# Header 1\n## Header 2\n### Header 3", "*Header 1*\n*Header 2*\n*Header 3*"),
        ("~~gone~~ and kept", "~gone~ and kept"),
        ("```typescript\nconst x = 1;\n```", "```\nconst x = 1;\n```"),
        (
            "**Bold** text with a [link](https://example.com) and `code`",
            "*Bold* text with a <https://example.com|link> and `code`",
        ),
        ("Use `npm install` to install packages", "Use `npm install` to install packages"),
        ("This is _italic text_", "This is _italic text_"),
        ("snake_case__name stays", "snake_case__name stays"),
        ("", ""),
        ("Plain text without any formatting", "Plain text without any formatting"),
    ],
)
def test_markdown_to_slack(source: str, expected: str) -> None:
    assert markdown_to_slack(source) == expected


def test_code_is_left_alone() -> None:
    source = "**run** this:\n```python\nprint('**not bold**')\n# not a header\n```\nthen `**x**`"
    assert markdown_to_slack(source) == (
        "*run* this:\n```\nprint('**not bold**')\n# not a header\n```\nthen `**x**`"
    )


def test_validate_detects_bold() -> None:
    assert "Found **bold** syntax (use *bold* for Slack)" in validate_slack_format(
        "This is **bold**"
    )


def test_validate_detects_links() -> None:
    assert "Found [text](url) links (use <url|text> for Slack)" in validate_slack_format(
        "[link text](https://example.com)"
    )


def test_validate_detects_headers() -> None:
    assert (
        "Found # headers (Slack doesn't support headers, use *text* instead)"
        in validate_slack_format("# Header")
    )


def test_validate_accepts_slack_format() -> None:
    text = "This is *bold* with a <https://example.com|link> and `code`"
    assert validate_slack_format(text) == []


def test_validate_reports_every_issue() -> None:
    assert len(validate_slack_format("# Header\n**Bold** text with [link](url)")) == 3


def test_converted_output_validates() -> None:
    source = "# Title\n**Bold** and [docs](https://example.com)"
    assert validate_slack_format(markdown_to_slack(source)) == []
