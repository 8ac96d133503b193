"""Static-site task modules live here.

Each module declares its tasks with `@sitepipe.task(name=..., inputs=[...], outputs=[...])`;
`pipelines.py` wires them into the named compositions the CLI runs.

Keep task bodies thin: they call out to the external tool and write into the
configured output tree.
"""
