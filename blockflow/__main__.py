from blockflow.cli import main

raise SystemExit(main())
