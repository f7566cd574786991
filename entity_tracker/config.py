import typing

import attr

PARTIAL_KEY_POLICIES = ("any", "all")


@attr.s(auto_attribs=True, frozen=True)
class TrackerOptions:
    # diff every Unchanged/Modified entry against its snapshot before entries(), has_changes() and commit()
    auto_detect_changes: bool = attr.ib(default=True, validator=attr.validators.instance_of(bool))
    # "any": a composite key with any unset component is unset, "all": only when every component is unset
    partial_key_policy: str = attr.ib(default="any", validator=attr.validators.in_(PARTIAL_KEY_POLICIES))
    # detach() also detaches entities reachable through navigations
    cascade_detach: bool = attr.ib(default=False, validator=attr.validators.instance_of(bool))

    @classmethod
    def from_mapping(cls, values: typing.Mapping[str, typing.Any]) -> "TrackerOptions":
        known = {field.name for field in attr.fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown tracker options: {', '.join(sorted(unknown))}")
        return cls(**values)
