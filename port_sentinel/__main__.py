from port_sentinel.main import main

raise SystemExit(main())
