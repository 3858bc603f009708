"""Command-line interface for inspecting and driving a fieldsync replica."""
