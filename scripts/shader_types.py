from dataclasses import dataclass
from types import MappingProxyType

# every type a reflected field may resolve to without being a struct.
# opaque resources (samplers, textures) have no host side storage, so
# they get a size of 0 and no c type
@dataclass(frozen=True)
class PrimitiveType:
    name: str
    byte_size: int
    c_type: str | None = None

    @property
    def is_opaque(self):
        return self.c_type is None

SIZE_OF_FLOAT = 4

# wgsl scalar -> (size, c scalar, glm vector prefix)
wgsl_scalars = {
    "f32": (SIZE_OF_FLOAT, "f32", ""),
    "i32": (4, "i32", "i"),
    "u32": (4, "u32", "u"),
    "f16": (2, "u16", "u16"),
    "bool": (4, "u32", "b"),
}

wgsl_short_suffixes = {
    "f32": "f",
    "i32": "i",
    "u32": "u",
    "f16": "h",
}

# names kept from the engine's glsl parser, so older shaders still resolve
glsl_scalars = {
    "float": (SIZE_OF_FLOAT, "f32", ""),
    "int": (4, "i32", "i"),
    "uint": (4, "u32", "u"),
    "double": (8, "f64", "d"),
    "bool": (4, "u32", "b"),
}

wgsl_texture_kinds = [
    "texture_1d",
    "texture_2d",
    "texture_2d_array",
    "texture_3d",
    "texture_cube",
    "texture_cube_array",
    "texture_multisampled_2d",
]

wgsl_opaque_types = [
    "sampler",
    "sampler_comparison",
    "texture_depth_2d",
    "texture_depth_2d_array",
    "texture_depth_cube",
    "texture_depth_cube_array",
    "texture_depth_multisampled_2d",
    "texture_external",
]

glsl_opaque_types = [
    "sampler1D",
    "sampler2D",
    "sampler3D",
    "samplerCube",
    "sampler2DRect",
    "sampler1DArray",
    "sampler2DArray",
    "samplerCubeArray",
]

def build_primitive_types():
    types = {}

    def add(name, byte_size, c_type=None):
        types[name] = PrimitiveType(name, byte_size, c_type)

    for scalar, (size, c_scalar, glm_prefix) in wgsl_scalars.items():
        add(scalar, size, c_scalar)
        for n in range(2, 5):
            c_vector = f"glm::{glm_prefix}vec{n}"
            add(f"vec{n}<{scalar}>", n * size, c_vector)
            if scalar in wgsl_short_suffixes:
                add(f"vec{n}{wgsl_short_suffixes[scalar]}", n * size, c_vector)

    # bare vecN / matCxR default to f32, same as the short f forms
    for n in range(2, 5):
        add(f"vec{n}", n * SIZE_OF_FLOAT, f"glm::vec{n}")

    for columns in range(2, 5):
        for rows in range(2, 5):
            size = columns * rows * SIZE_OF_FLOAT
            c_matrix = f"glm::mat{columns}x{rows}"
            add(f"mat{columns}x{rows}", size, c_matrix)
            add(f"mat{columns}x{rows}f", size, c_matrix)
            add(f"mat{columns}x{rows}<f32>", size, c_matrix)

    for scalar, (size, c_scalar, glm_prefix) in glsl_scalars.items():
        if scalar not in types:
            add(scalar, size, c_scalar)
        for n in range(2, 5):
            name = f"{glm_prefix}vec{n}"
            if name not in types:
                add(name, n * size, f"glm::{name}")

    for n in range(2, 5):
        add(f"mat{n}", n * n * SIZE_OF_FLOAT, f"glm::mat{n}")

    for kind in wgsl_texture_kinds:
        for scalar in ("f32", "i32", "u32"):
            add(f"{kind}<{scalar}>", 0)
    for name in wgsl_opaque_types + glsl_opaque_types:
        add(name, 0)

    return MappingProxyType(types)

# built once, handed to every parser instance
PRIMITIVE_TYPES = build_primitive_types()

# size lookup for host side layouts, unknown names count as 0 bytes
def primitive_size(type_name, primitive_types=PRIMITIVE_TYPES):
    primitive = primitive_types.get(type_name)
    if primitive is None:
        return 0
    return primitive.byte_size
