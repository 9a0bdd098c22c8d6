"""
Run the sshwrap command-line interface: python -m sshwrap ...
"""

from sshwrap.cli import main

if __name__ == "__main__":
    main()
