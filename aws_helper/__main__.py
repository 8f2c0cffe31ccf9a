import sys

from aws_helper.cli import main

sys.exit(main())
