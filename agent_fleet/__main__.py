"""
Entry point for running agent_fleet as a module.

Allows running as: python -m agent_fleet
"""

from agent_fleet.cli import cli_main

if __name__ == "__main__":
    cli_main()
