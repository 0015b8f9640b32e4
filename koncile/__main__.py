"""
CLI entry point, when used as a module: `python -m koncile`.

Useful for debugging in the IDEs (use the start-mode "Module", module "koncile").
"""
from koncile import cli

if __name__ == '__main__':
    cli.main()
