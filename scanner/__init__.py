# scanner/__init__.py
"""
Static analysis for PowerShell deployment scripts.

- ast_nodes: generic syntax tree shared by all rules
- powershell: PowerShell adapter (parse)
- whitelist: identity-reference suppression for credential rules
- rules: the diagnostic rules and their registry
- engine: runs rules over files and builds ScanReports
"""
