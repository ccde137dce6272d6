"""Unit tests for ${{ }} interpolation."""

from actionci.expressions import evaluate, render, render_mapping, secret_refs

CONTEXTS = {
    "github": {"actor": "octocat", "ref": "main", "event": {"number": 7}},
    "secrets": {"TOKEN": "t0k"},
    "job": {"status": "success"},
}


def test_render_lookup():
    assert render("by ${{ github.actor }} on ${{github.ref}}", CONTEXTS) == "by octocat on main"


def test_render_nested_and_missing():
    assert render("#${{ github.event.number }}", CONTEXTS) == "#7"
    assert render("[${{ github.nope }}]", CONTEXTS) == "[]"


def test_fallback_operator():
    assert evaluate("github.nope || 'default'", CONTEXTS) == "default"
    assert evaluate("github.actor || 'default'", CONTEXTS) == "octocat"


def test_non_strings_pass_through():
    assert render(3, CONTEXTS) == 3
    assert render_mapping({"a": "${{ job.status }}", "b": True}, CONTEXTS) == {"a": "success", "b": True}


def test_secret_refs_only_inside_expressions():
    refs = secret_refs(["echo ${{ secrets.TOKEN }}", "secrets.OTHER", {"not": "text"}, "${{ secrets.B || secrets.A }}"])
    assert refs == {"TOKEN", "A", "B"}
