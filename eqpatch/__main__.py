"""Allow ``python -m eqpatch``."""

from .app import main

raise SystemExit(main())
