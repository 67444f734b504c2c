#!/usr/bin/env python3
import os
import sys
import argparse
from enum import Enum, auto
from pathlib import Path

from shader_reflection import (
    RED,
    YELLOW,
    RESET,
    ShaderParser,
    ShaderReflectionError,
    ShaderStage,
    interface_size,
    push_constant_ranges,
)
from shader_types import PRIMITIVE_TYPES

SHADER_EXTENSION = ".wgsl"
GENERATED_HEADER_NAME = "shader_reflection.h"

class DescriptorType(Enum):
    IMAGE_SAMPLER = auto()
    UNIFORM_BUFFER = auto()

descriptor_type_to_vulkan_enum = {
    DescriptorType.IMAGE_SAMPLER: "VK_DESCRIPTOR_TYPE_COMBINED_IMAGE_SAMPLER",
    DescriptorType.UNIFORM_BUFFER: "VK_DESCRIPTOR_TYPE_UNIFORM_BUFFER",
}

stage_to_flag = {
    ShaderStage.VERTEX: "VK_SHADER_STAGE_VERTEX_BIT",
    ShaderStage.FRAGMENT: "VK_SHADER_STAGE_FRAGMENT_BIT",
}

def source_is_newer(source, target):
    if not target.exists():
        return True
    return source.stat().st_mtime > target.stat().st_mtime

# expect name.wgsl, where name is usable as a C identifier
def validate_filename_and_get_name(filename):
    name, extension = os.path.splitext(filename)
    if extension != SHADER_EXTENSION or not name.isidentifier():
        print(f"Expected filename of the form {{name}}{SHADER_EXTENSION}")
        print("\tNot reflecting file: " + filename)
        return None
    return name

def c_identifier(field_name):
    return field_name.replace(".", "_")

# one C struct mirroring a flattened interface. opaque fields have no host side storage
def struct_codegen(typename, fields, primitive_types=PRIMITIVE_TYPES):
    code = f"struct {typename} {{\n"
    for field in fields:
        primitive = primitive_types[field.type_name]
        if primitive.is_opaque:
            continue
        code += f"  {primitive.c_type} {c_identifier(field.name)};\n"
    code += "};\n\n"
    return code

# struct mirrors, binding table and push constant ranges for one shader
def shader_reflection_codegen(shader_name, reflection, primitive_types=PRIMITIVE_TYPES):
    code = f"// {shader_name}\n"

    for block in reflection.uniforms.values():
        if block.is_resource:
            continue
        code += struct_codegen(f"{shader_name}_{block.name}", block.fields, primitive_types)

    for blocks in (reflection.vertex_push_constants, reflection.fragment_push_constants):
        for block in blocks.values():
            code += struct_codegen(f"{shader_name}_{block.name}_push", block.fields, primitive_types)

    bindings = sorted(reflection.uniforms.values(), key=lambda b: (b.group, b.binding))
    code += f"const u32 {shader_name}_binding_count = {len(bindings)};\n"
    if bindings:
        code += f"const ShaderBindingSpec {shader_name}_bindings[] = {{\n"
        for block in bindings:
            if block.is_resource:
                descriptor_type = DescriptorType.IMAGE_SAMPLER
            else:
                descriptor_type = DescriptorType.UNIFORM_BUFFER
            size = interface_size(block.fields, primitive_types)
            code += (f"  {{ .group = {block.group}, .binding = {block.binding}, "
                     f".type = {descriptor_type_to_vulkan_enum[descriptor_type]}, .size = {size} }},\n")
        code += "};\n"

    ranges = push_constant_ranges(reflection, primitive_types)
    code += f"const u32 {shader_name}_push_constant_range_count = {len(ranges)};\n"
    if ranges:
        code += f"const VkPushConstantRange {shader_name}_push_constant_ranges[] = {{\n"
        for push_range in ranges:
            code += (f"  {{ .stageFlags = {stage_to_flag[push_range.stage]}, "
                     f".offset = {push_range.offset}, .size = {push_range.size} }},\n")
        code += "};\n"

    return code + "\n"

def dump_tables(shader_name, reflection):
    print(f"-------- {shader_name}")
    for name, fields in reflection.structs.items():
        print(f"struct {name}: {fields}")
    for block in reflection.uniforms.values():
        print(f"uniform {block.name} (group {block.group}, binding {block.binding}): {block.fields}")
    for blocks in (reflection.vertex_push_constants, reflection.fragment_push_constants):
        for block in blocks.values():
            print(f"{block.stage.value} push constant {block.name}: {block.fields}")
    print(f"vs_main inputs: {reflection.vertex_inputs}")
    print(f"fs_main inputs: {reflection.fragment_inputs}")

# parses every shader and returns the generated header source.
# raises ShaderReflectionError on the first shader that fails
def reflect_all_shaders(shaders, parser, dump=False):
    code = "// Generated shader reflection header, do not edit\n"
    code += "#pragma once\n#include <stdint.h>\n#include <glm/glm.hpp>\n#include \"vulkan_base.h\"\n\n"
    code += "struct ShaderBindingSpec {\n  u32 group;\n  u32 binding;\n  VkDescriptorType type;\n  u32 size;\n};\n\n"

    for source_file, name in shaders:
        try:
            reflection = parser.parse_file(source_file)
        except ShaderReflectionError:
            print(f"{RED}Parser error in {source_file}{RESET}")
            raise
        if dump:
            dump_tables(name, reflection)
        code += shader_reflection_codegen(name, reflection, parser.primitive_types)

    return code

def build_argument_parser(project_root):
    parser = argparse.ArgumentParser(description="Reflect shader interfaces into a C++ header")
    parser.add_argument(
        "--shaders-dir",
        type=Path,
        default=project_root / "shaders",
        help="directory searched for .wgsl shaders"
    )
    parser.add_argument(
        "--subdir",
        type=str,
        help="subdirectory of the shaders directory to reflect"
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="generated header path, defaults to gen/shader_reflection.h"
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Ignore timestamps and force reflection"
    )
    parser.add_argument(
        "--dump-tables",
        action="store_true",
        help="Print the flattened tables of every shader"
    )
    parser.add_argument(
        "--preserve-field-order",
        action="store_true",
        help="Inline nested struct fields in declaration order instead of reversed"
    )
    return parser

def main(argv=None):
    script_dir = os.path.dirname(os.path.realpath(__file__))
    project_root = Path(os.path.abspath(os.path.join(script_dir, "..")))
    args = build_argument_parser(project_root).parse_args(argv)

    shaders_dir = args.shaders_dir
    generated_header_name = GENERATED_HEADER_NAME
    if args.subdir:
        shaders_dir = shaders_dir / args.subdir
        if not shaders_dir.exists() or not shaders_dir.is_dir():
            print(f"{RED}Error: subdirectory '{args.subdir}' does not exist in '{args.shaders_dir}'{RESET}")
            return 1
        generated_header_name = f"{args.subdir}_{GENERATED_HEADER_NAME}"

    if not shaders_dir.is_dir():
        print(f"{RED}Error: Could not find shaders directory at '{shaders_dir}'{RESET}")
        return 1

    header_path = args.output or project_root / "gen" / generated_header_name
    os.makedirs(header_path.parent, exist_ok=True)

    shaders_to_reflect = []
    should_regenerate = False
    for subdir, _, filenames in sorted(os.walk(shaders_dir)):
        if os.path.basename(subdir) == "gen":
            continue
        for filename in sorted(filenames):
            source_file = Path(subdir) / filename
            if source_is_newer(source_file, header_path):
                should_regenerate = True

            name = validate_filename_and_get_name(filename)
            if name is None:
                continue
            shaders_to_reflect.append((source_file, name))

    if not shaders_to_reflect:
        print(f"{YELLOW}Warning: no {SHADER_EXTENSION} shaders found in {shaders_dir}{RESET}")

    if not (should_regenerate or args.force):
        print(f"reflect_shaders.py: Nothing to be done for {header_path.name}")
        return 0

    parser = ShaderParser(reverse_nested_fields=not args.preserve_field_order)
    try:
        header_source = reflect_all_shaders(shaders_to_reflect, parser, dump=args.dump_tables)
    except ShaderReflectionError as e:
        print(f"{RED}{e}{RESET}")
        return 1
    except OSError as e:
        print(f"{RED}Could not read shader: {e}{RESET}")
        return 1

    with open(header_path, 'w', encoding='utf-8') as generated_header_handle:
        generated_header_handle.write(header_source)
    print(f"reflect_shaders.py: wrote {header_path}")
    return 0

if __name__ == "__main__":
    sys.exit(main())
