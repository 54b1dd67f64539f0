# =============================================================================
# Mailmirror Entry Point for `python -m mailmirror`
# =============================================================================
# Equivalent to running the 'mailmirror' command after installation.
# =============================================================================

import sys

from mailmirror.app import main

if __name__ == "__main__":
    sys.exit(main())
