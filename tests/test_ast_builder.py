# tests/test_ast_builder.py
"""
Tests for the PowerShell adapter.

- Checks the node kinds and attributes the rules rely on.
- Checks that syntax errors are returned with line/column, located at the
  construct left open, and that later statements survive an error.
"""

import os

import pytest

from models import SourceUnit
from scanner import ast_nodes as n
from scanner.ast_nodes import variables_in
from scanner.powershell import _unclosed, parse

pytestmark = pytest.mark.unit


def first_statement(text):
    tree, errors = parse(text)
    assert errors == []
    assert tree.kind == n.SCRIPT
    return tree.children[0]


def test_assignment_of_string_literal():
    stmt = first_statement("$password = 'Secret1!'")
    assert stmt.kind == n.ASSIGNMENT
    assert stmt.name == "password"
    value = stmt.child("value")
    assert value.kind == n.STRING
    assert value.value == "Secret1!"
    assert value.attrs["quote"] == "'"
    assert not value.attrs["expandable"]
    assert (value.line, value.column) == (1, 13)


def test_expandable_string_records_variables():
    stmt = first_statement('$msg = "Deploying $TemplateName to ${Server}"')
    value = stmt.child("value")
    assert value.attrs["expandable"]
    assert value.attrs["variables"] == ["TemplateName", "Server"]


def test_double_quoted_string_without_variables_is_not_expandable():
    value = first_statement('$x = "plain text"').child("value")
    assert value.attrs["quote"] == '"'
    assert not value.attrs["expandable"]


def test_here_string():
    text = '$body = @"\nline one\nline $two\n"@\n'
    value = first_statement(text).child("value")
    assert value.kind == n.STRING
    assert value.attrs["here"]
    assert value.value == "line one\nline $two"
    assert value.attrs["variables"] == ["two"]


def test_param_block_with_types_attributes_and_default():
    text = (
        "param(\n"
        "    [Parameter(Mandatory = $true)]\n"
        "    [string]$ServerAddress,\n"
        "    [SecureString]$Password,\n"
        "    [int]$Retries = 3\n"
        ")\n"
    )
    block = first_statement(text)
    assert block.kind == n.PARAM_BLOCK
    params = [c for c in block.children if c.kind == n.PARAMETER]
    assert [p.name for p in params] == ["ServerAddress", "Password", "Retries"]
    assert params[0].attrs["type"] == "string"
    assert params[0].attrs["attributes"] == ["Parameter"]
    assert params[0].line == 3
    attribute = params[0].children[0]
    assert attribute.kind == n.ATTRIBUTE
    entry = attribute.children[0]
    assert entry.kind == n.HASH_ENTRY and entry.attrs["key"] == "Mandatory"
    assert params[1].attrs["types"] == ["SecureString"]
    default = params[2].child("default")
    assert default.kind == n.NUMBER and default.value == "3"


def test_function_parameter_list_and_body():
    text = "function Deploy-CA([string]$Server) {\n    Write-Output $Server\n}\n"
    func = first_statement(text)
    assert func.kind == n.FUNCTION
    assert func.name == "Deploy-CA"
    params = func.children[0]
    assert params.kind == n.PARAM_BLOCK and params.attrs["style"] == "function"
    body = func.child("body")
    assert body.kind == n.SCRIPT_BLOCK
    assert body.children[0].kind == n.COMMAND


def test_command_parameters_switches_and_arguments():
    cmd = first_statement('Stop-Service -Name "Spooler" -Force "extra"')
    assert cmd.kind == n.COMMAND
    assert cmd.name == "Stop-Service"
    name_param, force_param, extra = cmd.children
    assert name_param.kind == n.COMMAND_PARAMETER and name_param.name == "Name"
    assert name_param.child("value").value == "Spooler"
    assert force_param.name == "Force" and force_param.children == []
    assert extra.attrs["role"] == "argument" and extra.value == "extra"


def test_pipeline():
    stmt = first_statement('Get-Service | Where-Object { $_.Status -eq "Running" }')
    assert stmt.kind == n.PIPELINE
    assert [c.name for c in stmt.children] == ["Get-Service", "Where-Object"]
    comparison = stmt.find_first(lambda node: node.kind == n.EXPRESSION)
    assert comparison.attrs["comparison"]
    assert comparison.attrs["operators"] == ["-eq"]


def test_static_and_instance_invocations():
    static = first_statement('[ScriptBlock]::Create("Get-Date")')
    assert static.kind == n.INVOCATION
    assert static.attrs["qualified"] == "ScriptBlock::Create"
    assert static.attrs["static"]
    assert static.child("argument").value == "Get-Date"

    instance = first_statement("$ExecutionContext.InvokeCommand.InvokeScript($code)")
    assert instance.kind == n.INVOCATION
    assert instance.name == "InvokeScript"
    assert instance.attrs["qualified"] == "$ExecutionContext.InvokeCommand.InvokeScript"
    assert not instance.attrs["static"]


def test_hashtable_entries():
    value = first_statement('$cfg = @{ Server = "ca01"; Port = 443 }').child("value")
    assert value.kind == n.HASHTABLE
    assert [e.attrs["key"] for e in value.children] == ["Server", "Port"]
    assert value.children[1].child("value").kind == n.NUMBER


def test_variables_in_includes_interpolated_names():
    stmt = first_statement('if ($DomainName -ne "$Parent") { throw "x" }')
    assert stmt.kind == n.KEYWORD_STATEMENT
    assert set(variables_in(stmt)) == {"domainname", "parent"}


def test_walk_is_preorder_in_source_order():
    tree, _ = parse("$a = 1\n$b = 2\n")
    names = [node.name for node in tree.walk() if node.kind == n.ASSIGNMENT]
    assert names == ["a", "b"]


def test_unterminated_string_is_reported_with_location():
    tree, errors = parse('$greeting = "Hello\nWrite-Output $greeting\n')
    assert errors
    assert errors[0].line == 1
    assert errors[0].column == 13
    assert "terminator" in errors[0].message
    assert tree.kind == n.SCRIPT


def test_missing_closing_brace():
    _, errors = parse("function Install {\n    Write-Output 1\n")
    assert any("Missing closing '}'" in e.message and e.line == 1 for e in errors)


def test_parser_recovers_after_unexpected_token():
    tree, errors = parse('$x = )\nWrite-Output "ok"\n')
    assert errors
    commands = [c for c in tree.find_all(n.COMMAND) if c.name == "Write-Output"]
    assert [c.line for c in commands] == [2]


def test_parse_never_raises_on_garbage():
    tree, errors = parse("}}}]]) @{ = ( [ '")
    assert tree.kind == n.SCRIPT
    assert errors


def test_source_unit_tags_errors_with_path():
    unit = SourceUnit(path="deploy.ps1", text="$x = 'open")
    errors = unit.parse_errors
    assert errors[0].file_path == "deploy.ps1"
    assert str(errors[0]).startswith("deploy.ps1:1:6:")
    # cached
    assert unit.ast is unit.ast


@pytest.mark.syntax
@pytest.mark.parametrize("name", ["clean_deploy.ps1", "insecure_deploy.ps1", "replay_deploy.ps1"])
def test_fixture_scripts_parse_cleanly(fixtures_dir, name):
    unit = SourceUnit.from_file(os.path.join(fixtures_dir, name))
    assert unit.parse_errors == []


def test_class_and_enum_definitions():
    text = (
        "enum Tier {\n"
        "    Root\n"
        "    Issuing\n"
        "}\n"
        "class CaNode {\n"
        "    [string]$Name\n"
        "    [void] Install([string]$Server) {\n"
        "        Write-Output $Server\n"
        "    }\n"
        "}\n"
    )
    tree, errors = parse(text)
    assert errors == []
    assert [c.name for c in tree.children] == ["enum", "class"]
    assert [c.name for c in tree.children[1].find_all(n.COMMAND)] == ["Write-Output"]


def test_try_catch_and_switch_statements():
    text = (
        "try {\n"
        "    Start-Service -Name CertSvc\n"
        "} catch {\n"
        "    Write-Warning $_\n"
        "}\n"
        "switch ($mode) {\n"
        "    'install' { Install-CA }\n"
        "    default { Write-Output 'skip' }\n"
        "}\n"
    )
    tree, errors = parse(text)
    assert errors == []
    assert [c.name for c in tree.children] == ["try", "switch"]
    assert {c.name for c in tree.find_all(n.COMMAND)} == {
        "Start-Service", "Write-Warning", "Install-CA", "Write-Output",
    }


@pytest.mark.parametrize("text,expected", [
    ('Write-Output "abc', ('"', 13)),
    ("$x = 'it''s", ("'", 5)),
    ("function f {\n  if ($a) {", ("{", 23)),
    ('$s = @"\nopen', ('"@', 5)),
    ('# "not a string\n$x = 1', None),
    ('@"\nbody\n"@', None),
    ('"a`"b"', None),
])
def test_unclosed_construct_in_fragment(text, expected):
    assert _unclosed(text) == expected
