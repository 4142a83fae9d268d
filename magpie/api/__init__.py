# magpie/api/__init__.py
