from mailrun.cli import main

raise SystemExit(main())
