import re
from dataclasses import dataclass, replace
from enum import Enum, auto

from shader_types import PRIMITIVE_TYPES, primitive_size

RED = "\033[31m"
YELLOW = "\033[33m"
RESET = "\033[0m"

DATA_MARKER = "#Data"
END_MARKER = "#end"
VERTEX_ENTRY = "fn vs_main"
FRAGMENT_ENTRY = "fn fs_main"

class ShaderReflectionError(Exception):
    pass

# missing or unterminated markers, entry points without a parameter list,
# structs that contain themselves
class MalformedShaderError(ShaderReflectionError):
    pass

class MalformedAnnotationError(MalformedShaderError):
    def __init__(self, line, message):
        super().__init__(f"{message}\n\t{line.strip()}")
        self.line = line

class UnresolvedTypeError(ShaderReflectionError):
    def __init__(self, interface, field, type_name):
        super().__init__(f"{interface}: field '{field}' has unknown type '{type_name}'")
        self.interface = interface
        self.field = field
        self.type_name = type_name

class ShaderStage(Enum):
    VERTEX = "vertex"
    FRAGMENT = "fragment"

# a field never holds a resolved type, only the name to look up later
@dataclass(frozen=True)
class Field:
    name: str
    type_name: str

@dataclass
class UniformBlock:
    name: str
    group: int
    binding: int
    fields: list[Field]

    # samplers and textures get an image descriptor instead of a buffer
    @property
    def is_resource(self):
        return any(
            field.type_name in PRIMITIVE_TYPES and PRIMITIVE_TYPES[field.type_name].is_opaque
            for field in self.fields
        )

@dataclass
class PushConstantBlock:
    name: str
    stage: ShaderStage
    group: int
    binding: int
    fields: list[Field]

@dataclass
class ShaderReflection:
    structs: dict[str, list[Field]]
    uniforms: dict[str, UniformBlock]
    vertex_push_constants: dict[str, PushConstantBlock]
    fragment_push_constants: dict[str, PushConstantBlock]
    vertex_inputs: list[Field]
    fragment_inputs: list[Field]

@dataclass
class EntrySignature:
    parameters: list[str]
    return_text: str

block_comment_re = re.compile(r"/\*.*?\*/", re.DOTALL)
attribute_re = re.compile(r"@\w+\s*(\([^)]*\))?")
struct_keyword_re = re.compile(r"\bstruct\b")
struct_name_re = re.compile(r"\bstruct\s+(\w+)")
declaration_prefix_re = re.compile(r"^\s*(var\b\s*(<[^>]*>)?|uniform\b)\s*")
push_constant_attribute_re = re.compile(r"\s*@\w+\s*\(")

def strip_line_comment(line):
    comment = line.find("//")
    if comment == -1:
        return line
    return line[:comment]

# lines are split on newlines and on the statement terminator, so a
# declaration ending in ; is its own line even when several share a row
def split_source_lines(contents):
    contents = block_comment_re.sub("", contents)
    lines = []
    for line in contents.split("\n"):
        lines.extend(strip_line_comment(line).split(";"))
    return lines

# split on sep, ignoring separators nested in <> or ()
def split_top_level(text, sep=","):
    parts = []
    depth = 0
    start = 0
    for i, c in enumerate(text):
        if c in "<(":
            depth += 1
        elif c in ">)":
            depth = max(depth - 1, 0)
        elif c == sep and depth == 0:
            parts.append(text[start:i])
            start = i + 1
    parts.append(text[start:])
    return parts

def find_line(lines, needle, start=0):
    for i in range(start, len(lines)):
        if needle in lines[i]:
            return i
    return None

# returns the payload of every #Data ... #end block, in order of discovery
def find_data_blocks(lines):
    blocks = []
    i = 0
    while i < len(lines):
        if lines[i].strip() != DATA_MARKER:
            i += 1
            continue

        end = find_line(lines, END_MARKER, i + 1)
        if end is None:
            raise MalformedShaderError(f"{DATA_MARKER} block starting at line {i + 1} has no {END_MARKER}")

        nested = next((j for j in range(i + 1, end) if lines[j].strip() == DATA_MARKER), None)
        if nested is not None:
            raise MalformedShaderError(f"{DATA_MARKER} at line {nested + 1} is nested inside another {DATA_MARKER} block")

        blocks.append(lines[i + 1:end])
        i = end + 1
    return blocks

# the text between the entry point's marker and its opening brace,
# split into raw "name:type" parameter tokens and the return annotation
def extract_entry_signature(lines, marker):
    start = find_line(lines, marker)
    if start is None:
        raise MalformedShaderError(f"No line containing '{marker}'")

    brace = find_line(lines, "{", start)
    if brace is None:
        raise MalformedShaderError(f"'{marker}' is not followed by a line with {{")

    text = " ".join(lines[start:brace + 1])
    text = text[text.index(marker) + len(marker):]
    brace_at = text.find("{")
    if brace_at == -1:
        raise MalformedShaderError(f"'{marker}' is not followed by {{")
    text = text[:brace_at]

    open_paren = text.find("(")
    if open_paren == -1:
        raise MalformedShaderError(f"'{marker}' has no parameter list")

    depth = 0
    close_paren = None
    for i in range(open_paren, len(text)):
        if text[i] == "(":
            depth += 1
        elif text[i] == ")":
            depth -= 1
            if depth == 0:
                close_paren = i
                break
    if close_paren is None:
        raise MalformedShaderError(f"Parameter list of '{marker}' is never closed")

    parameters_text = attribute_re.sub("", text[open_paren + 1:close_paren])
    parameters_text = "".join(parameters_text.split())
    parameters = [p for p in split_top_level(parameters_text) if p]

    return_text = text[close_paren + 1:]
    arrow = return_text.find("->")
    return_text = return_text[arrow + 2:].strip() if arrow != -1 else ""

    return EntrySignature(parameters, return_text)

def split_parameters(parameters, interface):
    fields = []
    for parameter in parameters:
        name, sep, type_name = parameter.partition(":")
        if not sep or not name or not type_name:
            raise MalformedShaderError(f"{interface}: parameter '{parameter}' is not of the form name: type")
        fields.append(Field(name, type_name))
    return fields

# a fragment parameter whose name shows up in the vertex stage's return
# annotation is fed by the vertex stage and is not a fragment input of its own.
# textual containment only, the return type is not looked into
def split_fragment_parameters(parameters, vertex_return_text):
    fields = split_parameters(parameters, FRAGMENT_ENTRY)
    return [field for field in fields if field.name not in vertex_return_text]

# "[@attr(..)] name: type[,]" -> Field, None when the text holds no field
def parse_field(text):
    text = attribute_re.sub("", text).strip().rstrip(",").strip()
    name, sep, type_name = text.partition(":")
    words = name.split()
    type_name = "".join(type_name.split())
    if not sep or not words or not type_name:
        return None
    return Field(words[-1], type_name)

# @group(N) @binding(M) [@push_constant(tag)]
# the first two parenthesised values are the group and binding, each closed
# by the nearest ) after it. an attribute directly after the binding marks a
# push constant and its contents come back as the tag. parentheses further
# along the line belong to the declaration. also returns where the annotation ends
def parse_group_binding(line):
    values = []
    end = 0
    i = 0
    while i < len(line):
        if line[i] != "(":
            i += 1
            continue

        close = line.find(")", i + 1)
        if close == -1:
            raise MalformedAnnotationError(line, "Unterminated ( in group/binding annotation")

        literal = line[i + 1:close].strip()
        if not literal.isdigit():
            raise MalformedAnnotationError(line, f"Expected unsigned integer in group/binding annotation, got '{literal}'")
        values.append(int(literal))
        end = close + 1
        i = close + 1
        if len(values) == 2:
            break

    if len(values) < 2:
        raise MalformedAnnotationError(line, "Expected @group(N) @binding(M)")

    tag = push_constant_attribute_re.match(line, end)
    if tag is None:
        return (values[0], values[1], None, end)
    close = line.find(")", tag.end())
    if close == -1:
        raise MalformedAnnotationError(line, "Unterminated ( in push constant tag")
    return (values[0], values[1], line[tag.end():close].strip(), close + 1)

def push_constant_stage(tag):
    words = set(re.split(r"\W+", tag.lower()))
    if words & {"fragment", "frag", "fs"}:
        return ShaderStage.FRAGMENT
    return ShaderStage.VERTEX

class ScanTarget(Enum):
    NONE = auto()
    STRUCT = auto()
    UNIFORM = auto()
    PUSH_CONSTANT = auto()
    BINDING = auto()

# what table the scanner is filling and whether a { ... } body is open.
# a STRUCT target with no open body is a struct still waiting for its {.
# a BINDING target is an annotation on a line of its own, waiting for the
# declaration it applies to
@dataclass(frozen=True)
class ScanState:
    target: ScanTarget = ScanTarget.NONE
    name: str | None = None
    stage: ShaderStage | None = None
    inside_body: bool = False
    annotation: tuple | None = None

class DeclarationScanner:
    def __init__(self):
        self.state = ScanState()
        self.structs = {}
        self.uniforms = {}
        self.push_constants = {
            ShaderStage.VERTEX: {},
            ShaderStage.FRAGMENT: {},
        }

    def scan(self, lines):
        for line in lines:
            self.scan_line(line)

        if self.state.inside_body:
            raise MalformedShaderError(f"Body of {self.state.name} is never closed with }}")
        if self.state.target == ScanTarget.STRUCT:
            raise MalformedShaderError(f"struct {self.state.name} has no body")
        if self.state.target == ScanTarget.BINDING:
            raise MalformedAnnotationError(self.state.name, "Annotation is not followed by a declaration")
        return self

    def scan_line(self, line):
        line = strip_line_comment(line).strip()
        if not line:
            return

        if self.state.inside_body:
            self.consume_body(line)
        elif self.state.target == ScanTarget.BINDING:
            self.declare_binding(line, *self.state.annotation)
        elif self.state.target == ScanTarget.STRUCT and not line.startswith("{"):
            raise MalformedShaderError(f"struct {self.state.name} has no body\n\t{line}")
        elif struct_keyword_re.search(line):
            self.open_struct(line)
        elif "@group(" in line and "@binding(" in line:
            self.open_binding(line)
        elif self.state.target == ScanTarget.STRUCT:
            self.state = replace(self.state, inside_body=True)
            self.consume_body(line[1:])

    def open_struct(self, line):
        match = struct_name_re.search(line)
        if match is None:
            raise MalformedShaderError(f"struct without a name\n\t{line}")

        name = match.group(1)
        self.declare(self.structs, name, [], "struct")
        self.state = ScanState(ScanTarget.STRUCT, name)

        brace = line.find("{")
        if brace != -1:
            self.state = replace(self.state, inside_body=True)
            self.consume_body(line[brace + 1:])

    def open_binding(self, line):
        group, binding, tag, end = parse_group_binding(line)
        if not line[end:].strip():
            self.state = ScanState(ScanTarget.BINDING, line, annotation=(group, binding, tag))
            return
        self.declare_binding(line[end:], group, binding, tag)

    def declare_binding(self, line, group, binding, tag):
        remainder = declaration_prefix_re.sub("", line, count=1)

        brace = remainder.find("{")
        if brace != -1:
            name = remainder[:brace].strip().rstrip(":").strip()
            if not name:
                raise MalformedShaderError(f"Block declaration without a name\n\t{line}")
            fields = []
            body = remainder[brace + 1:]
        else:
            field = parse_field(remainder)
            if field is None:
                raise MalformedShaderError(f"Expected name: type after group/binding annotation\n\t{line}")
            name = field.name
            fields = [field]
            body = None

        if tag is None:
            self.declare(self.uniforms, name, UniformBlock(name, group, binding, fields), "uniform")
            state = ScanState(ScanTarget.UNIFORM, name)
        else:
            stage = push_constant_stage(tag)
            block = PushConstantBlock(name, stage, group, binding, fields)
            self.declare(self.push_constants[stage], name, block, f"{stage.value} push constant")
            state = ScanState(ScanTarget.PUSH_CONSTANT, name, stage)

        if body is None:
            self.state = ScanState()
            return

        self.state = replace(state, inside_body=True)
        self.consume_body(body)

    # fields up to an optional closing brace, which ends the body
    def consume_body(self, text):
        closing = text.find("}")
        content = text if closing == -1 else text[:closing]

        for part in split_top_level(content):
            if not part.strip():
                continue
            field = parse_field(part)
            if field is None:
                print(f"{YELLOW}Warning: skipping '{part.strip()}' in body of {self.state.name}, expected name: type{RESET}")
                continue
            self.current_fields().append(field)

        if closing != -1:
            self.state = ScanState()

    def current_fields(self):
        target = self.state.target
        if target == ScanTarget.STRUCT:
            return self.structs[self.state.name]
        if target == ScanTarget.UNIFORM:
            return self.uniforms[self.state.name].fields
        if target == ScanTarget.PUSH_CONSTANT:
            return self.push_constants[self.state.stage][self.state.name].fields
        raise MalformedShaderError("Field found outside of any struct or block body")

    # a later declaration with the same name replaces the earlier one
    def declare(self, table, name, value, kind):
        if name in table:
            print(f"{YELLOW}Warning: {kind} {name} redeclared, replacing the earlier definition{RESET}")
        table[name] = value

# first field whose type is neither a primitive nor a declared struct
def find_unresolved_field(fields, structs, primitive_types=PRIMITIVE_TYPES):
    for field in fields:
        if field.type_name not in primitive_types and field.type_name not in structs:
            return field
    return None

def validate_interface(interface, fields, structs, primitive_types=PRIMITIVE_TYPES):
    unresolved = find_unresolved_field(fields, structs, primitive_types)
    if unresolved is not None:
        raise UnresolvedTypeError(interface, unresolved.name, unresolved.type_name)

# replaces every struct typed field by the already flat fields of that struct.
# push constants are addressed by leaf name, everything else by a dotted path
def inline_struct_fields(fields, flat_structs, prefix_names=True, reverse_nested_fields=True):
    result = []
    for field in fields:
        children = flat_structs.get(field.type_name)
        if children is None:
            result.append(field)
            continue

        if reverse_nested_fields:
            children = list(reversed(children))
        for child in children:
            name = f"{field.name}.{child.name}" if prefix_names else child.name
            result.append(Field(name, child.type_name))
    return result

# structs are flattened against themselves first, depth first, so a struct is
# only inlined once it holds nothing but primitives
def flatten_structs(structs, reverse_nested_fields=True):
    flat = {}
    in_progress = []

    def flatten(name):
        if name in flat:
            return
        if name in in_progress:
            cycle = " -> ".join(in_progress[in_progress.index(name):] + [name])
            raise MalformedShaderError(f"Recursive struct definition: {cycle}")

        in_progress.append(name)
        for field in structs[name]:
            if field.type_name in structs:
                flatten(field.type_name)
        flat[name] = inline_struct_fields(structs[name], flat, True, reverse_nested_fields)
        in_progress.pop()

    for name in structs:
        flatten(name)
    return {name: flat[name] for name in structs}

def interface_size(fields, primitive_types=PRIMITIVE_TYPES):
    return sum(primitive_size(field.type_name, primitive_types) for field in fields)

@dataclass
class PushConstantRange:
    name: str
    stage: ShaderStage
    offset: int
    size: int

# vertex blocks first, then fragment blocks, packed back to back
def push_constant_ranges(reflection, primitive_types=PRIMITIVE_TYPES):
    ranges = []
    offset = 0
    for blocks in (reflection.vertex_push_constants, reflection.fragment_push_constants):
        for block in blocks.values():
            size = interface_size(block.fields, primitive_types)
            ranges.append(PushConstantRange(block.name, block.stage, offset, size))
            offset += size
    return ranges

class ShaderParser:
    def __init__(self, primitive_types=PRIMITIVE_TYPES, reverse_nested_fields=True):
        self.primitive_types = primitive_types
        self.reverse_nested_fields = reverse_nested_fields

    def primitive_size(self, type_name):
        return primitive_size(type_name, self.primitive_types)

    def parse_file(self, filepath):
        with open(filepath, 'r', encoding='utf-8') as f:
            contents = f.read()
        return self.parse(contents, str(filepath))

    # vertex and fragment stage kept in separate files
    def parse_files(self, vertex_filepath, fragment_filepath):
        sources = []
        for filepath in (vertex_filepath, fragment_filepath):
            with open(filepath, 'r', encoding='utf-8') as f:
                sources.append(f.read())
        return self.parse("\n".join(sources), f"{vertex_filepath} + {fragment_filepath}")

    def parse(self, contents, source_name="<string>"):
        lines = split_source_lines(contents)

        data_blocks = find_data_blocks(lines)
        if not data_blocks:
            print(f"{YELLOW}Warning: {source_name} has no {DATA_MARKER} blocks{RESET}")
        data_lines = [line for block in data_blocks for line in block]

        scanner = DeclarationScanner().scan(data_lines)

        vertex_signature = extract_entry_signature(lines, VERTEX_ENTRY)
        fragment_signature = extract_entry_signature(lines, FRAGMENT_ENTRY)
        vertex_inputs = split_parameters(vertex_signature.parameters, VERTEX_ENTRY)
        fragment_inputs = split_fragment_parameters(fragment_signature.parameters, vertex_signature.return_text)

        structs = scanner.structs
        vertex_push_constants = scanner.push_constants[ShaderStage.VERTEX]
        fragment_push_constants = scanner.push_constants[ShaderStage.FRAGMENT]
        uniforms = scanner.uniforms

        # nothing gets flattened until every interface resolves
        for name, fields in structs.items():
            validate_interface(f"struct {name}", fields, structs, self.primitive_types)
        for block in vertex_push_constants.values():
            validate_interface(f"vertex push constant {block.name}", block.fields, structs, self.primitive_types)
        for block in fragment_push_constants.values():
            validate_interface(f"fragment push constant {block.name}", block.fields, structs, self.primitive_types)
        for block in uniforms.values():
            validate_interface(f"uniform {block.name}", block.fields, structs, self.primitive_types)
        validate_interface(VERTEX_ENTRY, vertex_inputs, structs, self.primitive_types)
        validate_interface(FRAGMENT_ENTRY, fragment_inputs, structs, self.primitive_types)

        flat_structs = flatten_structs(structs, self.reverse_nested_fields)

        def flatten(fields, prefix_names=True):
            return inline_struct_fields(fields, flat_structs, prefix_names, self.reverse_nested_fields)

        for block in vertex_push_constants.values():
            block.fields = flatten(block.fields, prefix_names=False)
        for block in fragment_push_constants.values():
            block.fields = flatten(block.fields, prefix_names=False)
        for block in uniforms.values():
            block.fields = flatten(block.fields)

        return ShaderReflection(
            structs=flat_structs,
            uniforms=uniforms,
            vertex_push_constants=vertex_push_constants,
            fragment_push_constants=fragment_push_constants,
            vertex_inputs=flatten(vertex_inputs),
            fragment_inputs=flatten(fragment_inputs),
        )

def parse_shader_file(filepath, primitive_types=PRIMITIVE_TYPES, reverse_nested_fields=True):
    return ShaderParser(primitive_types, reverse_nested_fields).parse_file(filepath)
