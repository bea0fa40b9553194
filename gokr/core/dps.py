# Copyright 2025 gokr contributors
# SPDX-License-Identifier: GPL-3.0-or-later
# Based on https://uapi-group.org/specifications/specs/discoverable_partitions_specification

boot = {
    "esp": ["ESP", "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"],
}

directory = {
    "generic": ["SD_GPT_LINUX_GENERIC", "0fc63daf-8483-4772-8e79-3d69d8477de4"],
}

# Keyed by GOARCH. The root type of the active slot lets systemd-boot and the
# kernel find the root partition; other architectures are not used by gokrazy.
root = {
    "amd64": ["SD_GPT_ROOT_X86_64", "4f68bce3-e8cd-4db1-96e7-fbcaf984b709"],
    "arm64": ["SD_GPT_ROOT_ARM64", "b921b045-1df0-41c3-af44-4c6f280d3fae"],
}


def root_type(goarch: str) -> str:
    """GPT type GUID of the root partition. Anything but amd64 uses the arm64
    type, matching what the appliance looks for."""
    if goarch == "amd64":
        return root["amd64"][1]
    return root["arm64"][1]
