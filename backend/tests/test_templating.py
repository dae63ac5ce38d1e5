"""
Tests for ``{{path}}`` rendering of action configs.
"""

from workflows.templating import render_template

CONTEXT = {
    "user": {"name": "Amy", "email": "amy@acme.test"},
    "item": {"sku": "SKU-1", "on_hand": 4, "active": True},
}


def test_simple_token():
    assert render_template("Hi {{user.name}}", CONTEXT) == "Hi Amy"


def test_whitespace_inside_braces():
    assert render_template("{{ item.sku }} low", CONTEXT) == "SKU-1 low"


def test_unresolved_renders_empty():
    assert render_template("Hi {{user.nickname}}!", CONTEXT) == "Hi !"


def test_values_are_stringified():
    assert render_template("{{item.on_hand}} left, active={{item.active}}", CONTEXT) == "4 left, active=true"


def test_nested_structures():
    config = {"to": "{{user.email}}", "lines": [{"sku": "{{item.sku}}", "qty": 5}], "retries": 3}

    assert render_template(config, CONTEXT) == {
        "to": "amy@acme.test",
        "lines": [{"sku": "SKU-1", "qty": 5}],
        "retries": 3,
    }


def test_text_without_tokens_is_unchanged():
    assert render_template("plain {text}", CONTEXT) == "plain {text}"
