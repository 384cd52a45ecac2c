"""Shared fixtures for the converter tests."""

import pytest

import app as web
import divi_converter

SAMPLE = r"""<!-- wp:divi/placeholder -->
<!-- wp:divi/section {"admin_label":"Hero","style":{"desktop":{"value":{"wrapper":"padding: 10px 0;\n margin:0"}}}} -->
<!-- wp:divi/row {"columns":2} -->
<!-- wp:divi/text {"content":"One","style":{"desktop":{"h2 strong":"color:#333; font-weight : 700"}}} /-->
<!-- wp:divi/text {"content":"Two"} /-->
<!-- /wp:divi/row -->
<!-- /wp:divi/section -->
<!-- /wp:divi/placeholder -->
"""

SAMPLE_CSS = (
    "/* divi_section [1] | desktop */\n"
    ".divi_section .wrapper { padding: 10px 0; margin: 0; }\n"
    "\n"
    "/* divi_text [1] | desktop */\n"
    ".divi_text h2 strong { color: #333; font-weight: 700; }"
)


@pytest.fixture
def sample_text():
    return SAMPLE


@pytest.fixture
def sample_css():
    return SAMPLE_CSS


@pytest.fixture
def bare_config():
    return divi_converter.ConverterConfig(prefix="", prefer_single=("foo",))


@pytest.fixture
def client():
    web.app.config.update(TESTING=True, MAX_CONTENT_LENGTH=2 * 1024 * 1024, RESULT_TTL=180)
    web.results.clear()
    with web.app.test_client() as c:
        yield c
    web.results.clear()
