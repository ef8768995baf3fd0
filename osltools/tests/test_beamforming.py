"""Tests for inverse models on a simulated EEG recording."""

import os
import shutil
import tempfile
import unittest

import mne
import numpy as np

CH_NAMES = ['Fp1', 'Fp2', 'F7', 'F3', 'Fz', 'F4', 'F8', 'FC5', 'FC1', 'FC2', 'FC6',
            'T7', 'C3', 'Cz', 'C4', 'T8', 'CP5', 'CP1', 'CP2', 'CP6',
            'P7', 'P3', 'Pz', 'P4', 'P8', 'O1', 'O2']


def _make_info(sfreq=200):
    info = mne.create_info(CH_NAMES, sfreq, ch_types='eeg')
    info.set_montage(mne.channels.make_standard_montage('standard_1020'))
    return info


class TestInverseModel(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        from ..source_recon import make_forward_model

        cls.test_dir = tempfile.mkdtemp()
        cls.info = _make_info()

        sphere = mne.make_sphere_model(r0='auto', head_radius='auto', info=cls.info, verbose=False)
        r0 = np.asarray(sphere['r0']) * 1000

        # Mirror pair, two midline sources and one lateral source (mm)
        cls.mni_coords = np.array([
            [-30, r0[1], r0[2] + 10],
            [30, r0[1], r0[2] + 10],
            [0, r0[1] + 35, r0[2] + 10],
            [0, r0[1] - 35, r0[2] + 10],
            [35, r0[1] - 30, r0[2] - 5],
        ])
        cls.fwd = make_forward_model(cls.info, cls.mni_coords, trans=None, bem=sphere,
                                     meg=False, eeg=True, verbose=False)

        # Simulate a 10 Hz source at the first location oriented along x
        rng = np.random.default_rng(3)
        n_times = 6000
        times = np.arange(n_times) / cls.info['sfreq']
        G = cls.fwd['sol']['data']
        g = G[:, 0] / np.linalg.norm(G[:, 0])
        data = 20 * np.outer(g, np.sin(2 * np.pi * 10 * times)) + rng.standard_normal((len(CH_NAMES), n_times))
        cls.raw = mne.io.RawArray(data, cls.info, verbose=False)

        cls.raw_file = os.path.join(cls.test_dir, 'sub1-raw.fif')
        cls.raw.save(cls.raw_file, verbose=False)

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.test_dir)

    def _options(self, **kwargs):
        options = {'modalities': ['EEG'], 'dirname': self.test_dir}
        options.update(kwargs)
        return options

    def test_forward_model(self):
        assert(self.fwd['nsource'] == len(self.mni_coords))
        assert(self.fwd['sol']['data'].shape == (len(CH_NAMES), 3 * len(self.mni_coords)))

    def test_scalar_beamformer(self):
        from ..source_recon import inverse_model

        montage = inverse_model(self.raw, self.mni_coords, self.fwd, self._options(prefix='scalar_'))

        assert(len(montage['montages']) == 1)
        mont = montage['montages'][0]
        assert(mont['weights'].shape == (1, len(self.mni_coords), len(CH_NAMES)))
        self.assertListEqual(mont['ch_names'], CH_NAMES)
        assert(len(montage['labels']) == len(self.mni_coords))
        assert(os.path.exists(os.path.join(self.test_dir, 'scalar_BF.h5')))

        # Unit-noise-gain in the normalised sensor space
        W = mont['weights'][0] * mont['sensor_norm'][np.newaxis]
        assert(np.allclose(np.linalg.norm(W, axis=1), 1))

    def test_vector_beamformer(self):
        from ..source_recon import inverse_model

        montage = inverse_model(self.raw, self.mni_coords, self.fwd, self._options(type='Vector', prefix='vector_'))

        mont = montage['montages'][0]
        assert(mont['weights'].shape == (1, 3 * len(self.mni_coords), len(CH_NAMES)))
        assert(montage['labels'][:3] == ['src0000_x', 'src0000_y', 'src0000_z'])

    def test_active_source(self):
        from ..source_recon import inverse_model, apply_montage

        montage = inverse_model(self.raw, self.mni_coords, self.fwd, self._options(prefix='active_'))
        sources = apply_montage(self.raw, montage)

        assert(isinstance(sources, mne.io.BaseRaw))
        assert(sources.ch_names == montage['labels'])
        assert(sources.n_times == self.raw.n_times)
        power = np.var(sources.get_data(), axis=1)
        assert(np.argmax(power) == 0)

    def test_saved_montage(self):
        from ..source_recon import inverse_model, read_montage, apply_montage

        montage = inverse_model(self.raw_file, self.mni_coords, self.fwd, self._options(prefix='saved_'))
        loaded = read_montage(os.path.join(self.test_dir, 'saved_BF.h5'))

        assert(np.allclose(loaded['montages'][0]['weights'], montage['montages'][0]['weights']))
        assert(np.allclose(loaded['mni_coords'], self.mni_coords))
        assert(loaded['options']['inverse_method'] == 'beamform')

        sources = apply_montage(self.raw, os.path.join(self.test_dir, 'saved_BF.h5'))
        assert(len(sources.ch_names) == len(self.mni_coords))

    def test_minimum_norm(self):
        from ..source_recon import inverse_model

        for method in ['mne_eye', 'mne_diag_datacov']:
            montage = inverse_model(self.raw, self.mni_coords, self.fwd,
                                    self._options(inverse_method=method, prefix=method + '_'))
            W = montage['montages'][0]['weights'][0]
            assert(W.shape == (len(self.mni_coords), len(CH_NAMES)))
            assert(np.all(np.isfinite(W)))

        # Identity noise gives unit norm weights in the normalised sensor space
        mont = inverse_model(self.raw, self.mni_coords, self.fwd,
                             self._options(inverse_method='mne_eye', prefix='eye_'))['montages'][0]
        W = mont['weights'][0] * mont['sensor_norm'][np.newaxis]
        assert(np.allclose(np.linalg.norm(W, axis=1), 1))

    def test_bilateral_beamformer(self):
        from ..source_recon import inverse_model

        single = inverse_model(self.raw, self.mni_coords, self.fwd, self._options(prefix='single_'))
        bilateral = inverse_model(self.raw, self.mni_coords, self.fwd,
                                  self._options(inverse_method='beamform_bilateral', prefix='bilateral_'))

        W1 = single['montages'][0]['weights'][0]
        W2 = bilateral['montages'][0]['weights'][0]

        # Midline sources are their own mirror
        assert(np.allclose(W1[2:4], W2[2:4]))
        # The mirror pair is constrained jointly
        assert(not np.allclose(W1[0], W2[0]))

    def test_pca_order(self):
        from ..source_recon import inverse_model

        montage = inverse_model(self.raw, self.mni_coords, self.fwd, self._options(pca_order=10, prefix='pca_'))
        mont = montage['montages'][0]
        W = mont['weights'][0] * mont['sensor_norm'][np.newaxis]
        assert(np.linalg.matrix_rank(W) <= 10)
        assert(montage['options']['pca_order'] == 10)

    def test_timespan(self):
        from ..source_recon import inverse_model

        montage = inverse_model(self.raw, self.mni_coords, self.fwd,
                                self._options(timespan=[5, 20], prefix='timespan_'))
        self.assertListEqual(montage['options']['timespan'], [5.0, 20.0])

        with self.assertRaises(ValueError):
            inverse_model(self.raw, self.mni_coords, self.fwd, self._options(timespan=[100, 200]))

    def test_class_channel(self):
        from ..source_recon import inverse_model

        classes = np.zeros((1, self.raw.n_times))
        classes[0, :3000] = 1
        classes[0, 3000:5000] = 2
        info = mne.create_info(['CLASS'], self.raw.info['sfreq'], ch_types='misc')
        raw = self.raw.copy().add_channels([mne.io.RawArray(classes, info, verbose=False)],
                                           force_update_info=True)

        montage = inverse_model(raw, self.mni_coords, self.fwd,
                                self._options(use_class_channel=True, prefix='class_'))
        assert(np.allclose(montage['classes'], [1, 2]))
        assert(montage['montages'][0]['weights'].shape == (2, len(self.mni_coords), len(CH_NAMES)))

        with self.assertRaises(ValueError):
            inverse_model(self.raw, self.mni_coords, self.fwd, self._options(use_class_channel=True))

    def test_epochs(self):
        from ..source_recon import inverse_model, apply_montage

        events = np.column_stack([np.arange(0, 6000, 400), np.zeros(15, dtype=int), np.tile([1, 2, 1], 5)])
        epochs = mne.Epochs(self.raw, events, event_id={'a': 1, 'b': 2}, tmin=0, tmax=1.5,
                            baseline=None, preload=True, verbose=False)

        montage = inverse_model(epochs, self.mni_coords, self.fwd, self._options(conditions=['a'], prefix='epo_'))
        self.assertListEqual(montage['options']['conditions'], ['a'])

        sources = apply_montage(epochs, montage)
        assert(isinstance(sources, mne.BaseEpochs))
        assert(len(sources) == len(epochs))

    def test_missing_inputs(self):
        from ..source_recon import inverse_model

        with self.assertRaises(ValueError):
            inverse_model(self.raw)
        with self.assertRaises(ValueError):
            inverse_model(self.raw, self.mni_coords[:2], self.fwd, self._options())

    def test_batch(self):
        from ..source_recon import run_inverse_batch

        batch_dir = os.path.join(self.test_dir, 'batch')
        os.makedirs(batch_dir, exist_ok=True)
        raw_file2 = os.path.join(self.test_dir, 'sub2-raw.fif')
        self.raw.save(raw_file2, overwrite=True, verbose=False)

        files = [self.raw_file, raw_file2, os.path.join(self.test_dir, 'sub3-raw.fif')]
        flags = run_inverse_batch(files, self.mni_coords, self.fwd,
                                  options={'modalities': ['EEG'], 'dirname': batch_dir})

        self.assertListEqual(flags, [True, True, False])
        assert(os.path.exists(os.path.join(batch_dir, 'sub1-raw_BF.h5')))
        assert(os.path.exists(os.path.join(batch_dir, 'sub2-raw_BF.h5')))

    def test_batch_from_text_file(self):
        from ..source_recon import run_inverse_batch

        batch_dir = os.path.join(self.test_dir, 'batch_list')
        os.makedirs(batch_dir, exist_ok=True)
        list_file = os.path.join(self.test_dir, 'batch_files.txt')
        with open(list_file, 'w') as f:
            f.write(self.raw_file + '\n')
            f.write(os.path.join(self.test_dir, 'sub4-raw.fif') + '\n')

        flags = run_inverse_batch(list_file, self.mni_coords, self.fwd,
                                  options={'modalities': ['EEG'], 'dirname': batch_dir})

        self.assertListEqual(flags, [True, False])
        assert(os.path.exists(os.path.join(batch_dir, 'sub1-raw_BF.h5')))



class TestCheckInverseOptions(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.test_dir = tempfile.mkdtemp()
        rng = np.random.default_rng(4)
        info = _make_info()
        raw = mne.io.RawArray(rng.standard_normal((len(CH_NAMES), 1000)), info, verbose=False)
        cls.raw_file = os.path.join(cls.test_dir, 'sub1-raw.fif')
        raw.save(cls.raw_file, verbose=False)
        cls.raw = mne.io.read_raw_fif(cls.raw_file, preload=True, verbose=False)

        mag_info = mne.create_info(['MEG0111', 'MEG0112', 'MEG0113'], 200, ch_types=['mag', 'grad', 'grad'])
        cls.meg_raw = mne.io.RawArray(rng.standard_normal((3, 1000)), mag_info, verbose=False)

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.test_dir)

    def test_defaults(self):
        from ..source_recon import check_inverse_options

        options = check_inverse_options(None, self.raw)

        self.assertListEqual(options['modalities'], ['MEG'])
        assert(options['type'] == 'Scalar')
        assert(options['timespan'][0] == 0 and np.isinf(options['timespan'][1]))
        assert(options['fuse'] == 'no')
        assert(options['inverse_method'] == 'beamform')
        assert(options['use_class_channel'] is False)
        self.assertListEqual(options['conditions'], ['all'])
        assert(options['prefix'] == '')

        # Temporary output directory next to the data
        assert(os.path.dirname(options['dirname']) == self.test_dir)
        assert(os.path.basename(options['dirname']).startswith('osl_bf_temp_'))
        assert(len(os.path.basename(options['dirname'])) == len('osl_bf_temp_') + 8)
        assert(os.path.isdir(options['dirname']))

    def test_planar_default(self):
        from ..source_recon import check_inverse_options

        options = check_inverse_options({'dirname': self.test_dir}, self.meg_raw)
        self.assertListEqual(options['modalities'], ['MEGPLANAR'])
        assert(options['pca_order'] == 2)

    def test_pca_order_default(self):
        from ..source_recon import check_inverse_options

        options = check_inverse_options({'modalities': 'EEG', 'dirname': self.test_dir}, self.raw)
        self.assertListEqual(options['modalities'], ['EEG'])
        assert(options['pca_order'] == len(CH_NAMES))

    def test_invalid_values(self):
        from ..source_recon import check_inverse_options

        invalid = {
            'modalities': ['EEG', 'MEGMAG'],
            'type': 'Tensor',
            'timespan': [2, 1],
            'pca_order': 'all',
            'fuse': 'some',
            'inverse_method': 'mne_adaptive',
            'use_class_channel': 'yes',
            'conditions': ['faces'],
            'prefix': 3,
            'dirname': self.test_dir,
        }
        with self.assertLogs('osltools.source_recon.beamforming', level='WARNING') as cm:
            options = check_inverse_options(invalid, self.raw)
        assert(len(cm.output) >= 9)

        self.assertListEqual(options['modalities'], ['MEG'])
        assert(options['type'] == 'Scalar')
        assert(np.isinf(options['timespan'][1]))
        assert(options['fuse'] == 'no')
        assert(options['inverse_method'] == 'beamform')
        assert(options['use_class_channel'] is False)
        self.assertListEqual(options['conditions'], ['all'])
        assert(options['prefix'] == '')

    def test_unknown_option(self):
        from ..source_recon import check_inverse_options

        with self.assertLogs('osltools.source_recon.beamforming', level='WARNING'):
            options = check_inverse_options({'dirname': self.test_dir, 'woi': [0, 1]}, self.raw)
        assert('woi' not in options)


# Centre of the sphere model and the MEG helmet (m)
MEG_R0 = np.array([0.0, 0.0, 0.04])


def _make_meg_info(n_positions=60, sfreq=200):
    """Magnetometers and planar gradiometer pairs on a 12 cm helmet."""
    k = np.arange(n_positions) + 0.5
    z = 1 - 0.8 * k / n_positions
    phi = np.pi * (1 + 5 ** 0.5) * k
    normals = np.column_stack([np.sqrt(1 - z ** 2) * np.cos(phi), np.sqrt(1 - z ** 2) * np.sin(phi), z])
    positions = MEG_R0 + 0.12 * normals

    ch_names = ['MAG{0:03d}'.format(i) for i in range(n_positions)]
    ch_names += ['GRAD{0:03d}{1}'.format(i, p) for i in range(n_positions) for p in 'ab']
    ch_types = ['mag'] * n_positions + ['grad'] * (2 * n_positions)
    info = mne.create_info(ch_names, sfreq, ch_types=ch_types)

    for i, (pos, ez) in enumerate(zip(positions, normals)):
        ex = np.cross([0.0, 0.0, 1.0], ez)
        ex /= np.linalg.norm(ex)
        ey = np.cross(ez, ex)
        info['chs'][i]['loc'][:] = np.concatenate([pos, ex, ey, ez])
        info['chs'][n_positions + 2 * i]['loc'][:] = np.concatenate([pos, ex, ey, ez])
        info['chs'][n_positions + 2 * i + 1]['loc'][:] = np.concatenate([pos, ey, -ex, ez])

    return info


class TestMEGInverseModel(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        from ..source_recon import make_forward_model

        cls.test_dir = tempfile.mkdtemp()
        cls.info = _make_meg_info()
        cls.n_mag = 60

        sphere = mne.make_sphere_model(r0=tuple(MEG_R0), head_radius=None, verbose=False)

        # Mirror pair, two midline sources and one lateral source (mm)
        cls.mni_coords = np.array([
            [-30, 0, 70],
            [30, 0, 70],
            [0, 35, 60],
            [0, -35, 60],
            [40, -30, 45],
        ])
        cls.fwd = make_forward_model(cls.info, cls.mni_coords, trans=None, bem=sphere, verbose=False)

        # 10 Hz source at the first location, tangential to the sphere
        rng = np.random.default_rng(6)
        n_times = 6000
        times = np.arange(n_times) / cls.info['sfreq']
        g = cls.fwd['sol']['data'][:, 1]
        noise_std = np.empty(len(g))
        noise_std[:cls.n_mag] = 0.5 * np.sqrt(np.mean(g[:cls.n_mag] ** 2))
        noise_std[cls.n_mag:] = 0.5 * np.sqrt(np.mean(g[cls.n_mag:] ** 2))
        data = np.outer(g, np.sin(2 * np.pi * 10 * times))
        data += noise_std[:, np.newaxis] * rng.standard_normal((len(g), n_times))
        cls.raw = mne.io.RawArray(data, cls.info, verbose=False)

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.test_dir)

    def _options(self, **kwargs):
        options = {'modalities': ['MEGMAG'], 'dirname': self.test_dir}
        options.update(kwargs)
        return options

    def _source_variance(self, montage, index=0):
        from ..source_recon import apply_montage

        sources = apply_montage(self.raw, montage, index=index)
        return np.var(sources.get_data(), axis=1)

    def test_forward_model(self):
        assert(self.fwd['nsource'] == len(self.mni_coords))
        assert(self.fwd['sol']['data'].shape == (3 * self.n_mag, 3 * len(self.mni_coords)))

    def test_scalar_methods(self):
        from ..source_recon import inverse_model

        for method in ('beamform', 'beamform_bilateral', 'mne_eye', 'mne_diag_datacov'):
            montage = inverse_model(self.raw, self.mni_coords, self.fwd,
                                    self._options(inverse_method=method, prefix=method + '_'))
            W = montage['montages'][0]['weights']
            assert(W.shape == (1, len(self.mni_coords), self.n_mag))
            assert(np.all(np.isfinite(W)))
            assert(np.all(np.linalg.norm(W[0], axis=1) > 0))

    def test_active_source(self):
        from ..source_recon import inverse_model

        montage = inverse_model(self.raw, self.mni_coords, self.fwd, self._options(prefix='active_'))
        assert(np.argmax(self._source_variance(montage)) == 0)

    def test_vector_weights_bounded(self):
        from ..source_recon import inverse_model

        montage = inverse_model(self.raw, self.mni_coords, self.fwd,
                                self._options(type='Vector', prefix='vector_'))
        mont = montage['montages'][0]
        W = mont['weights'][0]
        assert(W.shape == (3 * len(self.mni_coords), self.n_mag))
        assert(np.all(np.isfinite(W)))

        # Unit-noise-gain rows have unit norm before the sensor normalisation
        assert(np.all(np.linalg.norm(W, axis=1) <= (1 + 1e-6) / np.min(mont['sensor_norm'])))

    def test_fuse_no(self):
        from ..source_recon import inverse_model

        montage = inverse_model(self.raw, self.mni_coords, self.fwd,
                                self._options(modalities=['MEGMAG', 'MEGPLANAR'], fuse='no', prefix='fuse_no_'))

        assert(len(montage['montages']) == 2)
        self.assertListEqual(montage['montages'][0]['modalities'], ['MEGMAG'])
        self.assertListEqual(montage['montages'][1]['modalities'], ['MEGPLANAR'])
        assert(len(montage['montages'][0]['ch_names']) == self.n_mag)
        assert(len(montage['montages'][1]['ch_names']) == 2 * self.n_mag)
        assert(montage['montages'][1]['weights'].shape == (1, len(self.mni_coords), 2 * self.n_mag))

        assert(np.argmax(self._source_variance(montage, index=1)) == 0)

    def test_fuse_meg(self):
        from ..source_recon import inverse_model
        from ..covariance import cov

        montage = inverse_model(self.raw, self.mni_coords, self.fwd,
                                self._options(modalities=['MEGMAG', 'MEGPLANAR'], fuse='meg', prefix='fuse_meg_'))

        assert(len(montage['montages']) == 1)
        mont = montage['montages'][0]
        self.assertListEqual(mont['modalities'], ['MEGMAG', 'MEGPLANAR'])
        self.assertListEqual(mont['ch_names'], self.raw.ch_names)
        assert(mont['weights'].shape == (1, len(self.mni_coords), 3 * self.n_mag))

        # One scale per sensor type, from the mean variance of its channels
        norm = mont['sensor_norm']
        C_mag, _ = cov(self.raw, picks='mag')
        C_grad, _ = cov(self.raw, picks='grad')
        assert(np.allclose(norm[:self.n_mag], np.sqrt(np.mean(np.diag(C_mag)))))
        assert(np.allclose(norm[self.n_mag:], np.sqrt(np.mean(np.diag(C_grad)))))

        assert(np.argmax(self._source_variance(montage)) == 0)

    def test_fuse_all(self):
        from ..source_recon import inverse_model

        options = self._options(modalities=['MEGMAG', 'MEGPLANAR'])
        montage_all = inverse_model(self.raw, self.mni_coords, self.fwd, dict(options, fuse='all', prefix='all_'))
        montage_meg = inverse_model(self.raw, self.mni_coords, self.fwd, dict(options, fuse='meg', prefix='meg_'))

        # Without EEG, fusing everything is fusing MEG
        assert(len(montage_all['montages']) == 1)
        assert(np.allclose(montage_all['montages'][0]['weights'], montage_meg['montages'][0]['weights']))

    def test_group_modalities(self):
        from ..source_recon.beamforming import _group_modalities

        self.assertListEqual(_group_modalities(['MEGMAG', 'MEGPLANAR'], 'no'), [['MEGMAG'], ['MEGPLANAR']])
        self.assertListEqual(_group_modalities(['MEGMAG', 'MEGPLANAR'], 'meg'), [['MEGMAG', 'MEGPLANAR']])
        self.assertListEqual(_group_modalities(['MEGMAG', 'EEG'], 'meg'), [['MEGMAG'], ['EEG']])
        self.assertListEqual(_group_modalities(['MEGMAG', 'EEG'], 'all'), [['MEGMAG', 'EEG']])
        self.assertListEqual(_group_modalities(['MEGPLANAR'], 'no'), [['MEGPLANAR']])
