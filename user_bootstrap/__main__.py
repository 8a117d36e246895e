# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import sys

from user_bootstrap.bootstrap import main

if __name__ == '__main__':
    sys.exit(main())
