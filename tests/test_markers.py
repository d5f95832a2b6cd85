from pi_release_upgrade.markers import APT_ENV, Severity, scan_output


class TestScanOutput:
    def test_clean_output(self) -> None:
        scan = scan_output(["Reading package lists... Done", "0 upgraded, 0 newly installed"])
        assert scan.severity is Severity.OK
        assert scan.matches == ()

    def test_kept_back_is_a_warning(self) -> None:
        scan = scan_output(["The following packages have been kept back:", "  libfoo"])
        assert scan.severity is Severity.WARNING
        assert scan.kinds == ("held-back",)
        assert scan.severity.label == "warning-detected"

    def test_error_outranks_warning(self) -> None:
        scan = scan_output(
            [
                "W: Some index files failed to download.",
                "E: Unable to correct problems, you have held broken packages.",
                "The following packages will be REMOVED:",
            ]
        )
        assert scan.severity is Severity.FAILED
        assert scan.kinds == ("warning", "error", "removed")

    def test_unmet_dependencies(self) -> None:
        scan = scan_output(["The following packages have unmet dependencies:"])
        assert scan.severity is Severity.FAILED

    def test_markers_only_match_line_starts(self) -> None:
        scan = scan_output(["Get:1 http://deb.debian.org E: not really an error"])
        assert scan.severity is Severity.OK

    def test_locale_is_fixed(self) -> None:
        assert APT_ENV["LC_ALL"] == "C.UTF-8"
        assert APT_ENV["DEBIAN_FRONTEND"] == "noninteractive"
