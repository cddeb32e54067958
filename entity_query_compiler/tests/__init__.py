# Copyright 2017-present Kensho Technologies, LLC.
