"""Command-line option registry that binds option names to fields of option objects."""

from __future__ import annotations

import dataclasses
import sys
from dataclasses import dataclass
from typing import Any

from globalsfm.options import GlobalMapperOptions

_SUPPORTED_TYPES = (bool, int, float, str)
_TYPE_NAMES = {kind.__name__: kind for kind in _SUPPORTED_TYPES}
_TRUE_WORDS = frozenset({"true", "yes", "on", "1"})
_FALSE_WORDS = frozenset({"false", "no", "off", "0"})
_HELP_HEADING = "The following options can be specified via command-line:"


class OptionError(ValueError):
    """Raised when options cannot be declared or parsed."""


@dataclass
class _Option:
    name: str
    target: Any
    field: str
    kind: type
    required: bool
    default: Any
    help_text: str


def _annotated_type(target: Any, field: str) -> type | None:
    """The declared type of a dataclass field, when it is a supported scalar."""
    if not dataclasses.is_dataclass(target) or isinstance(target, type):
        return None
    for f in dataclasses.fields(target):
        if f.name != field:
            continue
        hint = f.type
        if hint in _SUPPORTED_TYPES:
            return hint
        if isinstance(hint, str):
            return _TYPE_NAMES.get(hint.strip())
        return None
    return None


def _field_type(target: Any, field: str) -> type:
    if not hasattr(target, field):
        raise OptionError(f"{type(target).__name__} has no field {field!r}")
    hint = _annotated_type(target, field)
    if hint is not None:
        return hint
    value = getattr(target, field)
    for kind in _SUPPORTED_TYPES:
        if type(value) is kind:
            return kind
    raise OptionError(f"Unsupported option type: {field}")


def _convert(option: _Option, token: str) -> Any:
    if option.kind is bool:
        word = token.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    elif option.kind is str:
        return token
    else:
        try:
            return option.kind(token)
        except ValueError:
            pass
    raise OptionError(f"the argument ('{token}') for option '--{option.name}' is invalid")


def _format_default(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def _reset_in_place(current: Any, fresh: Any) -> None:
    """Copy ``fresh`` into ``current`` keeping nested option objects' identity."""
    for f in dataclasses.fields(current):
        old = getattr(current, f.name)
        new = getattr(fresh, f.name)
        if (
            dataclasses.is_dataclass(old)
            and not isinstance(old, type)
            and type(old) is type(new)
        ):
            _reset_in_place(old, new)
        else:
            setattr(current, f.name, new)


class OptionManager:
    """Declares command-line options for the global mapper and parses them into fields."""

    database_path: str
    image_path: str
    mapper: GlobalMapperOptions

    def __init__(self, add_project_options: bool = True) -> None:
        self.database_path = ""
        self.image_path = ""
        self.mapper = GlobalMapperOptions()
        self._options: dict[str, _Option] = {}
        self._registered: list[_Option] = []
        self._added_database_options = False
        self._added_image_options = False
        self.reset()

    # ------------------------------------------------------------------
    # Option groups
    # ------------------------------------------------------------------
    def add_all_options(self) -> None:
        self.add_database_options()
        self.add_image_options()
        self.add_global_mapper_options()
        self._add_inlier_threshold_options()
        self.add_view_graph_calibration_options()
        self.add_relative_pose_estimation_options()
        self.add_rotation_estimator_options()
        self.add_track_establishment_options()
        self.add_global_positioner_options()
        self.add_bundle_adjuster_options()
        self.add_triangulator_options()

    def add_database_options(self) -> None:
        if self._added_database_options:
            return
        self._added_database_options = True
        self._add_and_register(True, "database_path", self, "database_path")

    def add_image_options(self) -> None:
        if self._added_image_options:
            return
        self._added_image_options = True
        self._add_and_register(True, "image_path", self, "image_path")

    def add_global_mapper_options(self) -> None:
        if self._added_mapper_options:
            return
        self._added_mapper_options = True
        m = self.mapper
        self._add_and_register(False, "ba_iteration_num", m, "num_iteration_bundle_adjustment")
        self._add_and_register(
            False, "retriangulation_iteration_num", m, "num_iteration_retriangulation"
        )
        for flag in (
            "skip_preprocessing",
            "skip_view_graph_calibration",
            "skip_relative_pose_estimation",
            "skip_rotation_averaging",
            "skip_global_positioning",
            "skip_bundle_adjustment",
            "skip_retriangulation",
            "skip_pruning",
        ):
            self._add_and_register(False, flag, m, flag)

    def add_global_mapper_full_options(self) -> None:
        self.add_global_mapper_options()
        self.add_view_graph_calibration_options()
        self.add_relative_pose_estimation_options()
        self.add_rotation_estimator_options()
        self.add_track_establishment_options()
        self.add_global_positioner_options()
        self.add_bundle_adjuster_options()
        self.add_triangulator_options()
        self._add_inlier_threshold_options()

    def add_global_mapper_resume_options(self) -> None:
        if self._added_mapper_options:
            return
        self._added_mapper_options = True
        m = self.mapper
        # These steps cannot run when resuming from an existing reconstruction.
        m.skip_preprocessing = True
        m.skip_view_graph_calibration = True
        m.skip_relative_pose_estimation = True
        m.skip_rotation_averaging = True
        m.skip_track_establishment = True
        m.skip_retriangulation = True

        self._add_and_register(False, "ba_iteration_num", m, "num_iteration_bundle_adjustment")
        self._add_and_register(
            False, "retriangulation_iteration_num", m, "num_iteration_retriangulation"
        )
        for flag in ("skip_global_positioning", "skip_bundle_adjustment", "skip_pruning"):
            self._add_and_register(False, flag, m, flag)

    def add_global_mapper_resume_full_options(self) -> None:
        self.add_global_mapper_resume_options()
        self.add_global_positioner_options()
        self.add_bundle_adjuster_options()
        self.add_triangulator_options()
        self._add_inlier_threshold_options()

    def add_view_graph_calibration_options(self) -> None:
        if self._added_view_graph_calibration_options:
            return
        self._added_view_graph_calibration_options = True
        opt = self.mapper.opt_vgcalib
        for name in ("thres_lower_ratio", "thres_higher_ratio", "thres_two_view_error"):
            self._add_and_register(False, f"ViewGraphCalib.{name}", opt, name)

    def add_relative_pose_estimation_options(self) -> None:
        if self._added_relative_pose_options:
            return
        self._added_relative_pose_options = True
        self._add_and_register(
            False,
            "RelPoseEstimation.max_epipolar_error",
            self.mapper.opt_relpose.ransac_options,
            "max_epipolar_error",
        )

    def add_rotation_estimator_options(self) -> None:
        if self._added_rotation_averaging_options:
            return
        self._added_rotation_averaging_options = True

    def add_track_establishment_options(self) -> None:
        if self._added_track_establishment_options:
            return
        self._added_track_establishment_options = True
        opt = self.mapper.opt_track
        for name in (
            "min_num_tracks_per_view",
            "min_num_view_per_track",
            "max_num_view_per_track",
            "max_num_tracks",
        ):
            self._add_and_register(False, f"TrackEstablishment.{name}", opt, name)

    def add_global_positioner_options(self) -> None:
        if self._added_global_positioning_options:
            return
        self._added_global_positioning_options = True
        opt = self.mapper.opt_gp
        for name in (
            "optimize_positions",
            "optimize_points",
            "optimize_scales",
            "thres_loss_function",
        ):
            self._add_and_register(False, f"GlobalPositioning.{name}", opt, name)
        self._add_and_register(
            False,
            "GlobalPositioning.max_num_iterations",
            opt.solver_options,
            "max_num_iterations",
        )

    def add_bundle_adjuster_options(self) -> None:
        if self._added_bundle_adjustment_options:
            return
        self._added_bundle_adjustment_options = True
        opt = self.mapper.opt_ba
        for name in (
            "optimize_rotations",
            "optimize_translation",
            "optimize_intrinsics",
            "optimize_points",
            "thres_loss_function",
        ):
            self._add_and_register(False, f"BundleAdjustment.{name}", opt, name)
        self._add_and_register(
            False,
            "BundleAdjustment.max_num_iterations",
            opt.solver_options,
            "max_num_iterations",
        )

    def add_triangulator_options(self) -> None:
        if self._added_triangulation_options:
            return
        self._added_triangulation_options = True
        opt = self.mapper.opt_triangulator
        self._add_and_register(
            False, "Triangulation.complete_max_reproj_error", opt, "tri_complete_max_reproj_error"
        )
        self._add_and_register(
            False, "Triangulation.merge_max_reproj_error", opt, "tri_merge_max_reproj_error"
        )
        self._add_and_register(False, "Triangulation.min_angle", opt, "tri_min_angle")
        self._add_and_register(False, "Triangulation.min_num_matches", opt, "min_num_matches")

    def _add_inlier_threshold_options(self) -> None:
        if self._added_inliers_options:
            return
        self._added_inliers_options = True
        opt = self.mapper.inlier_thresholds
        for name in (
            "max_epipolar_error_E",
            "max_epipolar_error_F",
            "max_epipolar_error_H",
            "min_inlier_num",
            "min_inlier_ratio",
            "max_rotation_error",
        ):
            self._add_and_register(False, f"Thresholds.{name}", opt, name)

    # ------------------------------------------------------------------
    # Single options
    # ------------------------------------------------------------------
    def add_required_option(self, name: str, target: Any, field: str, help_text: str = "") -> None:
        """Declare an option that must be given; its value is written to ``target.field``."""
        self._declare(name, target, field, True, help_text)

    def add_default_option(self, name: str, target: Any, field: str, help_text: str = "") -> None:
        """Declare an option whose default is the field's current value."""
        self._declare(name, target, field, False, help_text)

    def _declare(
        self, name: str, target: Any, field: str, required: bool, help_text: str
    ) -> _Option:
        if name in self._options or name == "help":
            raise OptionError(f"option '{name}' is declared more than once")
        kind = _field_type(target, field)
        option = _Option(
            name=name,
            target=target,
            field=field,
            kind=kind,
            required=required,
            default=None if required else getattr(target, field),
            help_text=help_text,
        )
        self._options[name] = option
        return option

    def _add_and_register(
        self, required: bool, name: str, target: Any, field: str, help_text: str = ""
    ) -> None:
        self._registered.append(self._declare(name, target, field, required, help_text))

    def registered_options(self) -> dict[str, Any]:
        """Current values of the registered options, in registration order."""
        return {opt.name: getattr(opt.target, opt.field) for opt in self._registered}

    def help_text(self) -> str:
        """Description of every declared option."""
        lines = ["  -h [ --help ]"]
        for opt in self._options.values():
            head = f"  --{opt.name} arg"
            if not opt.required:
                head += f" (={_format_default(opt.default)})"
            if opt.help_text:
                head += f"  {opt.help_text}"
            lines.append(head)
        return "\n".join(lines) + "\n"

    # ------------------------------------------------------------------
    # Reset and parsing
    # ------------------------------------------------------------------
    def reset(self) -> None:
        """Restore default values and forget every declared option."""
        self.reset_options(True)
        self._options = {}
        self._registered = []
        self._added_mapper_options = False
        self._added_view_graph_calibration_options = False
        self._added_relative_pose_options = False
        self._added_rotation_averaging_options = False
        self._added_track_establishment_options = False
        self._added_global_positioning_options = False
        self._added_bundle_adjustment_options = False
        self._added_triangulation_options = False
        self._added_inliers_options = False

    def reset_options(self, reset_paths: bool) -> None:
        """Restore the mapper options to their defaults, and the paths if asked."""
        if reset_paths:
            self.database_path = ""
            self.image_path = ""
        _reset_in_place(self.mapper, GlobalMapperOptions())

    def parse(self, argv: list[str] | None = None) -> None:
        """Parse ``--name value`` / ``--name=value`` arguments into the bound fields.

        ``--help`` or ``-h`` prints the option description and exits successfully.
        """
        tokens = list(sys.argv[1:] if argv is None else argv)
        given: dict[str, Any] = {}
        help_requested = False
        i = 0
        while i < len(tokens):
            token = tokens[i]
            i += 1
            if token in ("-h", "--help"):
                help_requested = True
                continue
            if not token.startswith("--") or token == "--":
                raise OptionError(
                    "Failed to parse options - too many positional options have been "
                    "specified on the command line."
                )
            body = token[2:]
            if "=" in body:
                name, value = body.split("=", 1)
            else:
                name, value = body, None
            option = self._options.get(name)
            if option is None:
                raise OptionError(f"Failed to parse options - unrecognised option '{token}'.")
            if value is None:
                if i >= len(tokens):
                    raise OptionError(
                        f"Failed to parse options - the required argument for option "
                        f"'--{name}' is missing."
                    )
                value = tokens[i]
                i += 1
            if name in given:
                raise OptionError(
                    f"Failed to parse options - option '--{name}' cannot be specified "
                    "more than once."
                )
            given[name] = _convert(option, value)

        if help_requested:
            print(f"{_HELP_HEADING}\n{self.help_text()}", end="")
            raise SystemExit(0)

        for option in self._options.values():
            if option.required and option.name not in given:
                raise OptionError(
                    f"Failed to parse options - the option '--{option.name}' is required "
                    "but missing."
                )

        for option in self._options.values():
            value = given.get(option.name, option.default)
            if option.name in given or not option.required:
                setattr(option.target, option.field, value)