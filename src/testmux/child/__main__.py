"""Allow ``python -m testmux.child``."""

from __future__ import annotations

import sys

from testmux.child.harness import main

sys.exit(main())
