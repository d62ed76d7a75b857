from vmbuilder.cli import main

raise SystemExit(main())
