# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""autofwd - Automatic port forwarding for SSH hosts and docker containers."""

__version__ = "0.1.0"
