from quant_cloud_backup.cli import main

raise SystemExit(main())
